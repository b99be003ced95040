"""Imgchest upload provider.

Imgchest accepts at most 20 images per request and enforces one global
window per token. Posts with more images are created with the first chunk
and filled with follow-up ``/post/{id}/add`` calls; throttling waits happen
inside the relay, so the client only sees the final outcome.
"""

from typing import Any, Mapping, Optional, Sequence

import httpx

from relay.app.exceptions import AuthenticationError, InvalidUploadError
from relay.app.providers.base import BaseProvider, FormFields, FormFile, build_form_data
from relay.app.ratelimit.interpreter import UpstreamResult, decode_upstream_response
from relay.app.ratelimit.models import MAX_IMGCHEST_IMAGES_PER_REQUEST, Provider, RetryConfig
from relay.app.services.chunked_upload import (
    Chunk,
    ChunkedUploadCoordinator,
    ChunkedUploadResult,
    ChunkTarget,
)
from relay.app.services.orchestrator import RetryOrchestrator

IMAGE_FIELD = "images[]"
_TRUTHY = ("1", "true", "on", "yes")


def resolve_post_id(body: Any) -> Optional[str]:
    """Post id from an imgchest response body ({"data": {"id": ...}})."""
    if not isinstance(body, Mapping):
        return None
    data = body.get("data")
    if not isinstance(data, Mapping):
        return None
    post_id = data.get("id")
    return str(post_id) if post_id else None


def is_anonymous(fields: FormFields) -> bool:
    return any(key == "anonymous" and value.strip().lower() in _TRUTHY for key, value in fields)


class ImgchestProvider(BaseProvider):
    """Client for imgchest post creation and image appends."""

    provider = Provider.IMGCHEST

    def __init__(
        self,
        base_url: str,
        orchestrator: RetryOrchestrator,
        http_client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "CatboxUploader/2.0",
        retry_config: Optional[RetryConfig] = None,
        default_token: str = "",
        max_images_per_request: int = MAX_IMGCHEST_IMAGES_PER_REQUEST,
    ):
        super().__init__(base_url, orchestrator, http_client, user_agent, retry_config)
        self.default_token = default_token
        self.max_images_per_request = max_images_per_request
        self.coordinator = ChunkedUploadCoordinator(resolve_post_id, label="Imgchest")

    def resolve_token(self, token: Optional[str]) -> str:
        """Client token first, then the configured one.

        Raises:
            AuthenticationError: If neither is available
        """
        resolved = (token or "").strip() or self.default_token
        if not resolved:
            raise AuthenticationError(
                "Imgchest API token not found. Set IMGCHEST_API_TOKEN or send an Authorization header"
            )
        return resolved

    async def create_post(
        self,
        images: Sequence[FormFile],
        fields: FormFields = (),
        token: Optional[str] = None,
    ) -> ChunkedUploadResult:
        """Create a post from any number of images.

        Args:
            images: Image parts in upload order
            fields: Post metadata (title, privacy, nsfw, anonymous, ...)
            token: Client supplied API token

        Raises:
            AuthenticationError: No token available
            InvalidUploadError: No images, or an anonymous post over the cap
            ChunkUploadError: A chunk failed
        """
        token = self.resolve_token(token)
        if not images:
            raise InvalidUploadError("No images provided")
        if is_anonymous(fields) and len(images) > self.max_images_per_request:
            # Anonymous posts cannot be appended to, so they cannot be chunked
            raise InvalidUploadError(
                f"Anonymous posts are limited to {self.max_images_per_request} images"
            )

        return await self.coordinator.submit_chunked(
            images,
            self.max_images_per_request,
            build_form_data(fields),
            self._chunk_submitter(token),
        )

    async def add_to_post(
        self,
        post_id: str,
        images: Sequence[FormFile],
        token: Optional[str] = None,
    ) -> ChunkedUploadResult:
        """Append images to an existing post, chunked the same way."""
        token = self.resolve_token(token)
        if not images:
            raise InvalidUploadError("No images provided")
        if not post_id:
            raise InvalidUploadError("Post id is required")

        return await self.coordinator.submit_chunked(
            images,
            self.max_images_per_request,
            None,
            self._chunk_submitter(token),
            append_to=post_id,
        )

    def _chunk_submitter(self, token: str):
        headers = {**self._build_headers(), "Authorization": f"Bearer {token}"}

        async def submit(chunk: Chunk) -> UpstreamResult:
            if chunk.target is ChunkTarget.CREATE:
                url = self._get_endpoint_url("/post")
            else:
                url = self._get_endpoint_url(f"/post/{chunk.append_to}/add")
            data = dict(chunk.metadata or {})
            files = [(IMAGE_FIELD, image) for image in chunk.items]

            async def operation() -> UpstreamResult:
                async with self._client_context() as client:
                    resp = await client.post(url, data=data, files=files, headers=headers)
                return decode_upstream_response(self.provider, resp)

            return await self.orchestrator.execute_with_retry(
                self.provider, operation, self.retry_config
            )

        return submit
