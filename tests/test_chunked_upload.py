"""Tests for sequential chunked uploads."""

from typing import Any, List

import pytest

from relay.app.exceptions import (
    ChunkUploadError,
    InvalidUploadError,
    RateLimitExceededError,
    RetriesExhaustedError,
)
from relay.app.ratelimit.interpreter import UpstreamResult
from relay.app.ratelimit.models import now_ms
from relay.app.services.chunked_upload import (
    Chunk,
    ChunkedUploadCoordinator,
    ChunkTarget,
    split_into_chunks,
)


def resolve_id(body: Any):
    return body.get("id") if isinstance(body, dict) else None


class RecordingSubmitter:
    """Submits chunks in order, answering from a scripted list."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.chunks: List[Chunk] = []

    async def __call__(self, chunk: Chunk) -> UpstreamResult:
        self.chunks.append(chunk)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class TestSplitIntoChunks:
    """Test partitioning."""

    def test_sizes_and_order(self):
        items = list(range(45))

        chunks = split_into_chunks(items, 20, metadata={"title": "album"})

        assert [len(c.items) for c in chunks] == [20, 20, 5]
        assert [c.index for c in chunks] == [1, 2, 3]
        assert [i for c in chunks for i in c.items] == items

    def test_only_first_carries_metadata(self):
        chunks = split_into_chunks(list(range(45)), 20, metadata={"title": "album"})

        assert chunks[0].metadata == {"title": "album"}
        assert chunks[0].target is ChunkTarget.CREATE
        assert chunks[0].is_first
        for chunk in chunks[1:]:
            assert chunk.metadata is None
            assert chunk.target is ChunkTarget.APPEND
            assert not chunk.is_first

    def test_append_mode(self):
        chunks = split_into_chunks(list(range(25)), 20, metadata={"title": "x"}, append_to="post1")

        assert all(c.target is ChunkTarget.APPEND for c in chunks)
        assert all(c.append_to == "post1" for c in chunks)
        assert all(c.metadata is None for c in chunks)

    def test_exact_multiple(self):
        assert [len(c.items) for c in split_into_chunks(list(range(40)), 20)] == [20, 20]

    def test_empty_items(self):
        with pytest.raises(InvalidUploadError):
            split_into_chunks([], 20)

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            split_into_chunks([1], 0)


class TestChunkedUploadCoordinator:
    """Test sequential submission."""

    @pytest.mark.asyncio
    async def test_all_chunks_succeed(self):
        submitter = RecordingSubmitter([
            UpstreamResult(200, body={"id": "post1", "images": 20}),
            UpstreamResult(200, body={"id": "post1", "images": 40}),
            UpstreamResult(200, body={"id": "post1", "images": 45}, headers={"x-ratelimit-remaining": "57"}),
        ])
        coordinator = ChunkedUploadCoordinator(resolve_id, label="Imgchest")

        result = await coordinator.submit_chunked(list(range(45)), 20, {"title": "t"}, submitter)

        assert [c.index for c in submitter.chunks] == [1, 2, 3]
        assert submitter.chunks[0].target is ChunkTarget.CREATE
        assert submitter.chunks[1].append_to == "post1"
        assert submitter.chunks[2].append_to == "post1"
        assert result.body == {"id": "post1", "images": 45}
        assert result.headers == {"X-RateLimit-Remaining": "57"}
        assert result.chunks == 3
        assert result.target_id == "post1"

    @pytest.mark.asyncio
    async def test_failed_middle_chunk_stops(self):
        submitter = RecordingSubmitter([
            UpstreamResult(200, body={"id": "post1"}),
            UpstreamResult(500, body={"error": "boom"}, headers={"x-ratelimit-remaining": "3"}),
            UpstreamResult(200, body={"id": "post1"}),
        ])
        coordinator = ChunkedUploadCoordinator(resolve_id, label="Imgchest")

        with pytest.raises(ChunkUploadError) as exc_info:
            await coordinator.submit_chunked(list(range(45)), 20, None, submitter)

        assert len(submitter.chunks) == 2
        error = exc_info.value
        assert error.chunk_index == 2
        assert error.status_code == 500
        assert error.headers == {"X-RateLimit-Remaining": "3"}
        assert error.to_response() == {
            "error": "Imgchest API error",
            "chunk": 2,
            "status": 500,
            "details": {"error": "boom"},
        }

    @pytest.mark.asyncio
    async def test_thrown_error_maps_to_500(self):
        submitter = RecordingSubmitter([RuntimeError("socket closed")])
        coordinator = ChunkedUploadCoordinator(resolve_id)

        with pytest.raises(ChunkUploadError) as exc_info:
            await coordinator.submit_chunked([1, 2], 20, None, submitter)

        assert exc_info.value.chunk_index == 1
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_relay_error_keeps_status(self):
        submitter = RecordingSubmitter([
            UpstreamResult(200, body={"id": "post1"}),
            RateLimitExceededError("imgchest"),
        ])
        coordinator = ChunkedUploadCoordinator(resolve_id)

        with pytest.raises(ChunkUploadError) as exc_info:
            await coordinator.submit_chunked(list(range(30)), 20, None, submitter)

        assert exc_info.value.chunk_index == 2
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_throttled_chunk_carries_reset(self):
        reset_at = now_ms() + 30_000
        submitter = RecordingSubmitter([RetriesExhaustedError("imgchest", 5, reset_at=reset_at)])

        with pytest.raises(ChunkUploadError) as exc_info:
            await ChunkedUploadCoordinator(resolve_id).submit_chunked([1], 20, None, submitter)

        error = exc_info.value
        assert error.status_code == 429
        assert error.reset_at == reset_at
        assert error.to_response()["reset_at"] == reset_at
        assert error.headers["X-RateLimit-Remaining"] == "0"
        assert error.headers["X-RateLimit-Reset"] == str(-(-reset_at // 1000))
        assert int(error.headers["Retry-After"]) in (29, 30)

    @pytest.mark.asyncio
    async def test_missing_id_with_more_chunks(self):
        submitter = RecordingSubmitter([UpstreamResult(200, body={"ok": True})])
        coordinator = ChunkedUploadCoordinator(resolve_id)

        with pytest.raises(ChunkUploadError) as exc_info:
            await coordinator.submit_chunked(list(range(30)), 20, None, submitter)

        assert exc_info.value.status_code == 502
        assert len(submitter.chunks) == 1

    @pytest.mark.asyncio
    async def test_single_chunk_without_id(self):
        submitter = RecordingSubmitter([UpstreamResult(200, body={"ok": True})])

        result = await ChunkedUploadCoordinator(resolve_id).submit_chunked([1], 20, None, submitter)

        assert result.body == {"ok": True}
        assert result.target_id is None

    @pytest.mark.asyncio
    async def test_append_uses_given_target(self):
        submitter = RecordingSubmitter([
            UpstreamResult(200, body={"id": "other"}),
            UpstreamResult(200, body={"id": "other"}),
        ])

        result = await ChunkedUploadCoordinator(resolve_id).submit_chunked(
            list(range(25)), 20, None, submitter, append_to="post9"
        )

        assert [c.append_to for c in submitter.chunks] == ["post9", "post9"]
        assert result.target_id == "post9"
