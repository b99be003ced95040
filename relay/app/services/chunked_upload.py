"""Chunked submission of oversized uploads.

An upload with more items than one request may carry is split into ordered
chunks. The first chunk creates the remote resource and carries the
request-level metadata; every later chunk appends to the resource id
returned by the first. Chunks run strictly one after another and the first
failure aborts the whole upload.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from relay.app.core.logging import get_log_context, get_logger
from relay.app.exceptions import (
    ChunkUploadError,
    InvalidUploadError,
    RateLimitExceededError,
    RelayException,
)
from relay.app.ratelimit.interpreter import (
    UpstreamResult,
    build_throttle_headers,
    extract_rate_limit_headers,
)

logger = get_logger(__name__)


class ChunkTarget(str, Enum):
    """Whether a chunk creates a new resource or appends to one."""
    CREATE = "create"
    APPEND = "append"


@dataclass
class Chunk:
    """A contiguous slice of the upload (index is 1-based)."""
    index: int
    items: Sequence[Any]
    is_first: bool
    target: ChunkTarget
    metadata: Optional[Mapping[str, Any]] = None
    append_to: Optional[str] = None


@dataclass
class ChunkedUploadResult:
    """Outcome of a fully successful chunked upload."""
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)
    chunks: int = 0
    target_id: Optional[str] = None


SubmitChunk = Callable[[Chunk], Awaitable[UpstreamResult]]
ResolveTarget = Callable[[Any], Optional[str]]


def split_into_chunks(
    items: Sequence[Any],
    max_per_request: int,
    metadata: Optional[Mapping[str, Any]] = None,
    append_to: Optional[str] = None,
) -> List[Chunk]:
    """Partition items into ordered chunks of at most max_per_request.

    Args:
        items: Ordered items to upload
        max_per_request: Per-request item cap
        metadata: Request-level fields carried by the first chunk only
        append_to: Existing resource id; when given, every chunk appends

    Raises:
        InvalidUploadError: If there are no items
        ValueError: If max_per_request is below 1
    """
    if max_per_request < 1:
        raise ValueError("max_per_request must be at least 1")
    if not items:
        raise InvalidUploadError("No images provided")

    chunks = []
    for number, start in enumerate(range(0, len(items), max_per_request), start=1):
        is_first = number == 1
        creates = is_first and append_to is None
        chunks.append(
            Chunk(
                index=number,
                items=items[start:start + max_per_request],
                is_first=is_first,
                target=ChunkTarget.CREATE if creates else ChunkTarget.APPEND,
                metadata=metadata if creates else None,
                append_to=append_to,
            )
        )
    return chunks


class ChunkedUploadCoordinator:
    """Drives chunks sequentially and merges them into one result.

    Args:
        resolve_target: Extracts the created resource id from the first
            chunk's response body
        label: Provider name used in error messages
    """

    def __init__(self, resolve_target: ResolveTarget, label: str = "Upload"):
        self._resolve_target = resolve_target
        self._label = label

    async def submit_chunked(
        self,
        items: Sequence[Any],
        max_per_request: int,
        metadata: Optional[Mapping[str, Any]],
        submit_chunk: SubmitChunk,
        append_to: Optional[str] = None,
    ) -> ChunkedUploadResult:
        """Submit every chunk in order.

        Raises:
            ChunkUploadError: On the first chunk that fails; later chunks are
                not submitted
        """
        chunks = split_into_chunks(items, max_per_request, metadata, append_to)
        target_id = append_to
        last: Optional[UpstreamResult] = None

        for chunk in chunks:
            if chunk.target is ChunkTarget.APPEND:
                chunk.append_to = target_id

            log_context = get_log_context(chunk=chunk.index, items=len(chunk.items), target=chunk.target.value)
            logger.info(f"Submitting chunk {chunk.index}/{len(chunks)}", extra=log_context)

            try:
                result = await submit_chunk(chunk)
            except RateLimitExceededError as e:
                logger.warning(f"Chunk {chunk.index} failed: {e.message}", extra=log_context)
                raise ChunkUploadError(
                    chunk.index,
                    e.status_code,
                    e.message,
                    headers=build_throttle_headers(e.reset_at),
                    reset_at=e.reset_at,
                ) from e
            except RelayException as e:
                logger.warning(f"Chunk {chunk.index} failed: {e.message}", extra=log_context)
                raise ChunkUploadError(chunk.index, e.status_code, e.message) from e
            except Exception as e:
                logger.warning(f"Chunk {chunk.index} failed: {e}", extra=log_context)
                raise ChunkUploadError(chunk.index, 500, str(e) or type(e).__name__) from e

            if not result.ok:
                logger.warning(
                    f"Chunk {chunk.index} rejected with status {result.status_code}",
                    extra=log_context,
                )
                raise ChunkUploadError(
                    chunk.index,
                    result.status_code,
                    f"{self._label} API error",
                    details=result.body,
                    headers=extract_rate_limit_headers(result.headers),
                )

            if chunk.target is ChunkTarget.CREATE:
                target_id = self._resolve_target(result.body)
                if not target_id and len(chunks) > 1:
                    raise ChunkUploadError(
                        chunk.index,
                        502,
                        f"{self._label} response did not include a post id",
                        details=result.body,
                    )

            last = result

        return ChunkedUploadResult(
            body=last.body,
            headers=extract_rate_limit_headers(last.headers),
            chunks=len(chunks),
            target_id=target_id,
        )
