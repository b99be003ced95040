"""Tests for the upstream provider clients."""

import httpx
import pytest

from relay.app.exceptions import (
    AuthenticationError,
    ChunkUploadError,
    InvalidUploadError,
    RetriesExhaustedError,
)
from relay.app.providers.base import build_form_data, build_multipart_parts
from relay.app.providers.catbox import CatboxProvider
from relay.app.providers.factory import ProviderRegistry, get_provider_registry
from relay.app.providers.imgchest import ImgchestProvider, is_anonymous, resolve_post_id
from relay.app.providers.sxcu import SxcuProvider
from relay.app.ratelimit.models import Provider, RetryConfig
from relay.app.services.orchestrator import RetryOrchestrator

CATBOX_URL = "https://catbox.moe/user/api.php"
SXCU_URL = "https://sxcu.net/api"
IMGCHEST_URL = "https://api.imgchest.com/v1"

FAST_RETRY = RetryConfig(max_retries=2, base_delay_ms=10, jitter_ms=0)


def image(n: int):
    return (f"img{n}.png", b"\x89PNG" + bytes([n % 256]), "image/png")


@pytest.fixture
def orchestrator(store, clock):
    return RetryOrchestrator(store, sleep=clock.sleep, clock=clock, rand=lambda: 0.0)


class TestBuildFormData:
    """Test form field grouping."""

    def test_repeated_keys_grouped(self):
        fields = [("reqtype", "createalbum"), ("files", "a.png"), ("files", "b.png"), ("files", "c.png")]

        assert build_form_data(fields) == {
            "reqtype": "createalbum",
            "files": ["a.png", "b.png", "c.png"],
        }

    def test_multipart_parts_keep_order(self):
        parts = build_multipart_parts(
            [("reqtype", "fileupload"), ("userhash", "abc")],
            [("fileToUpload", ("a.png", b"\x89PNG", "image/png"))],
        )

        assert parts == [
            ("reqtype", (None, "fileupload")),
            ("userhash", (None, "abc")),
            ("fileToUpload", ("a.png", b"\x89PNG", "image/png")),
        ]


class TestCatboxProvider:
    """Catbox passthrough."""

    @pytest.mark.asyncio
    async def test_unknown_reqtype(self, orchestrator):
        provider = CatboxProvider(CATBOX_URL, orchestrator, retry_config=FAST_RETRY)

        with pytest.raises(InvalidUploadError, match="Unknown request type"):
            await provider.upload([("reqtype", "deletefiles")])

    @pytest.mark.asyncio
    async def test_missing_reqtype(self, orchestrator):
        provider = CatboxProvider(CATBOX_URL, orchestrator, retry_config=FAST_RETRY)

        with pytest.raises(InvalidUploadError):
            await provider.upload([])

    @pytest.mark.asyncio
    async def test_upload(self, orchestrator, respx_mock):
        route = respx_mock.post(CATBOX_URL).mock(
            return_value=httpx.Response(200, text="https://files.catbox.moe/abc.png")
        )
        provider = CatboxProvider(CATBOX_URL, orchestrator, user_agent="test-agent", retry_config=FAST_RETRY)

        result = await provider.upload([("reqtype", "fileupload")], [("fileToUpload", image(1))])

        assert result.raw_text == "https://files.catbox.moe/abc.png"
        assert route.call_count == 1
        assert route.calls.last.request.headers["User-Agent"] == "test-agent"

    @pytest.mark.asyncio
    async def test_fields_only_request_is_multipart(self, orchestrator, respx_mock):
        route = respx_mock.post(CATBOX_URL).mock(return_value=httpx.Response(200, text="https://files.catbox.moe/b.png"))
        provider = CatboxProvider(CATBOX_URL, orchestrator, retry_config=FAST_RETRY)

        await provider.upload([("reqtype", "urlupload"), ("url", "https://example.com/b.png")])

        request = route.calls.last.request
        assert request.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        body = request.content
        assert b'Content-Disposition: form-data; name="reqtype"\r\n\r\nurlupload' in body
        assert b'name="url"\r\n\r\nhttps://example.com/b.png' in body

    @pytest.mark.asyncio
    async def test_retries_on_429(self, orchestrator, respx_mock, clock):
        route = respx_mock.post(CATBOX_URL).mock(side_effect=[
            httpx.Response(429, text="slow down"),
            httpx.Response(200, text="https://files.catbox.moe/abc.png"),
        ])
        provider = CatboxProvider(CATBOX_URL, orchestrator, retry_config=FAST_RETRY)

        result = await provider.upload([("reqtype", "urlupload"), ("url", "https://example.com/a.png")])

        assert result.status_code == 200
        assert route.call_count == 2
        assert clock.sleeps == [0.01]

    @pytest.mark.asyncio
    async def test_exhaustion(self, orchestrator, respx_mock):
        route = respx_mock.post(CATBOX_URL).mock(return_value=httpx.Response(429, text="slow down"))
        provider = CatboxProvider(CATBOX_URL, orchestrator, retry_config=FAST_RETRY)

        with pytest.raises(RetriesExhaustedError):
            await provider.upload([("reqtype", "fileupload")], [("fileToUpload", image(1))])

        assert route.call_count == 3


class TestSxcuProvider:
    """Sxcu buckets and immediate 429s."""

    @pytest.mark.asyncio
    async def test_upload_learns_bucket(self, orchestrator, respx_mock, store):
        respx_mock.post(f"{SXCU_URL}/files/create").mock(
            return_value=httpx.Response(
                200,
                json={"id": "abc", "url": "https://sxcu.net/abc"},
                headers={
                    "X-RateLimit-Bucket": "files-bucket",
                    "X-RateLimit-Limit": "5",
                    "X-RateLimit-Remaining": "4",
                    "X-RateLimit-Reset-After": "10",
                },
            )
        )
        provider = SxcuProvider(SXCU_URL, orchestrator, retry_config=FAST_RETRY)

        result = await provider.upload_file([], [("file", image(1))])

        assert result.body["id"] == "abc"
        assert provider.known_bucket("/files/create") == "files-bucket"
        assert provider.known_bucket("/collections/create") is None
        assert store.get_entry(Provider.SXCU, "files-bucket").remaining == 4

    @pytest.mark.asyncio
    async def test_exhausted_bucket_answered_locally(self, orchestrator, respx_mock):
        route = respx_mock.post(f"{SXCU_URL}/files/create").mock(
            return_value=httpx.Response(
                200,
                json={"id": "abc"},
                headers={
                    "X-RateLimit-Bucket": "files-bucket",
                    "X-RateLimit-Limit": "5",
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset-After": "10",
                },
            )
        )
        provider = SxcuProvider(SXCU_URL, orchestrator, retry_config=FAST_RETRY)

        await provider.upload_file([], [("file", image(1))])
        result = await provider.upload_file([], [("file", image(2))])

        assert route.call_count == 1
        assert result.status_code == 429
        assert result.headers["X-RateLimit-Bucket"] == "files-bucket"
        assert result.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_upstream_429_returned(self, orchestrator, respx_mock, clock):
        route = respx_mock.post(f"{SXCU_URL}/collections/create").mock(
            return_value=httpx.Response(
                429,
                json={"error": "Global rate limit exceeded", "code": 2},
                headers={"X-RateLimit-Reset-After": "20"},
            )
        )
        provider = SxcuProvider(SXCU_URL, orchestrator, retry_config=FAST_RETRY)

        result = await provider.create_collection([("title", "album")])

        assert result.status_code == 429
        assert result.is_global_error is True
        assert route.call_count == 1
        assert clock.sleeps == []
        assert route.calls.last.request.headers["Content-Type"].startswith("multipart/form-data")


class TestImgchestProvider:
    """Imgchest posts, chunking and tokens."""

    def test_resolve_post_id(self):
        assert resolve_post_id({"data": {"id": "p1"}}) == "p1"
        assert resolve_post_id({"data": []}) is None
        assert resolve_post_id("nope") is None

    def test_is_anonymous(self):
        assert is_anonymous([("anonymous", "true")])
        assert is_anonymous([("anonymous", "1")])
        assert not is_anonymous([("anonymous", "false")])
        assert not is_anonymous([])

    def test_token_required(self, orchestrator):
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator)

        with pytest.raises(AuthenticationError):
            provider.resolve_token(None)

    def test_default_token(self, orchestrator):
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, default_token="server-token")

        assert provider.resolve_token(None) == "server-token"
        assert provider.resolve_token("client-token") == "client-token"

    @pytest.mark.asyncio
    async def test_no_images(self, orchestrator):
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, default_token="t")

        with pytest.raises(InvalidUploadError):
            await provider.create_post([], [("title", "x")])

    @pytest.mark.asyncio
    async def test_anonymous_cap(self, orchestrator):
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, default_token="t")
        images = [image(n) for n in range(21)]

        with pytest.raises(InvalidUploadError, match="Anonymous"):
            await provider.create_post(images, [("anonymous", "true")])

    @pytest.mark.asyncio
    async def test_large_post_is_chunked(self, orchestrator, respx_mock):
        create = respx_mock.post(f"{IMGCHEST_URL}/post").mock(
            return_value=httpx.Response(200, json={"data": {"id": "p1", "images": []}})
        )
        add = respx_mock.post(f"{IMGCHEST_URL}/post/p1/add").mock(
            return_value=httpx.Response(
                200,
                json={"data": {"id": "p1", "images": ["..."]}},
                headers={"X-RateLimit-Limit": "60", "X-RateLimit-Remaining": "57"},
            )
        )
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, retry_config=FAST_RETRY)

        result = await provider.create_post(
            [image(n) for n in range(45)], [("title", "album")], token="client-token"
        )

        assert create.call_count == 1
        assert add.call_count == 2
        assert create.calls.last.request.headers["Authorization"] == "Bearer client-token"
        assert result.chunks == 3
        assert result.target_id == "p1"
        assert result.headers == {"X-RateLimit-Limit": "60", "X-RateLimit-Remaining": "57"}

    @pytest.mark.asyncio
    async def test_add_to_post(self, orchestrator, respx_mock):
        add = respx_mock.post(f"{IMGCHEST_URL}/post/p9/add").mock(
            return_value=httpx.Response(200, json={"data": {"id": "p9"}})
        )
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, default_token="t", retry_config=FAST_RETRY)

        result = await provider.add_to_post("p9", [image(1), image(2)])

        assert add.call_count == 1
        assert result.body == {"data": {"id": "p9"}}

    @pytest.mark.asyncio
    async def test_html_response_fails_chunk(self, orchestrator, respx_mock):
        route = respx_mock.post(f"{IMGCHEST_URL}/post").mock(
            return_value=httpx.Response(200, text="<html>Login</html>")
        )
        provider = ImgchestProvider(IMGCHEST_URL, orchestrator, default_token="t", retry_config=FAST_RETRY)

        with pytest.raises(ChunkUploadError) as exc_info:
            await provider.create_post([image(1)], [])

        assert route.call_count == 3
        assert exc_info.value.chunk_index == 1
        assert exc_info.value.status_code == 502


class TestProviderRegistry:
    """Test registry wiring."""

    def test_shares_one_orchestrator(self, store):
        registry = ProviderRegistry(store)

        assert registry.catbox.orchestrator is registry.orchestrator
        assert registry.sxcu.orchestrator is registry.orchestrator
        assert registry.imgchest.orchestrator.store is store

    def test_global_registry_cached(self):
        assert get_provider_registry() is get_provider_registry()
