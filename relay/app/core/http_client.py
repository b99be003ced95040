"""Shared HTTP client management for upstream uploads.

One httpx.AsyncClient is opened in the application lifespan and shared by
every provider so connections to the upload hosts are reused.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx

from relay.app.core.config import settings


# Shared HTTP client for connection pooling
_shared_http_client: httpx.AsyncClient | None = None


def _default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def _default_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance.

    Raises:
        RuntimeError: If the HTTP client has not been initialized.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Ensure lifespan context is active."
        )
    return _shared_http_client


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

    Used in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client():
                yield
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(
        timeout=_default_timeout(), limits=_default_limits()
    )

    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        **kwargs: Extra httpx.AsyncClient arguments (e.g. timeout, transport)
    """
    kwargs.setdefault("timeout", _default_timeout())
    kwargs.setdefault("limits", _default_limits())
    return httpx.AsyncClient(**kwargs)
