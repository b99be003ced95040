from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.app.api.rate_limits import router as rate_limits_router
from relay.app.api.upload import router as upload_router
from relay.app.core.cache import get_cache
from relay.app.core.config import settings
from relay.app.core.http_client import init_http_client
from relay.app.core.logging import get_logger, setup_logging
from relay.app.exceptions import ChunkUploadError, RateLimitExceededError, RelayException
from relay.app.middleware.request_id import RequestIdMiddleware
from relay.app.providers.factory import reset_provider_registry
from relay.app.ratelimit.interpreter import RATE_LIMIT_HEADER_NAMES, build_throttle_headers
from relay.app.ratelimit.store import get_store


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Opens the shared HTTP connection pool and restores the tracked rate
        limit state on startup; closes both on shutdown.
        """
        async with init_http_client() as http_client:
            store = get_store()
            await store.load()

            # Rebuild providers around the shared client
            reset_provider_registry()

            logger.info(
                "Application startup complete",
                extra={
                    "rate_limit_backend": store.backend.kind,
                    "debug_mode": settings.debug,
                },
            )

            yield {"http_client": http_client}

            reset_provider_registry()

        await get_cache().close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Upload Relay",
        description="Rate limit aware upload relay for catbox, sxcu and imgchest",
        version="2.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", *RATE_LIMIT_HEADER_NAMES],
        max_age=600,
    )

    # Include routers
    app.include_router(upload_router)
    app.include_router(rate_limits_router)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "rate_limit_backend": get_cache().kind,
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=build_throttle_headers(exc.reset_at),
        )

    @app.exception_handler(ChunkUploadError)
    async def chunk_error_handler(request: Request, exc: ChunkUploadError) -> JSONResponse:
        """Report which chunk failed, with the upstream status."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.headers,
        )

    @app.exception_handler(RelayException)
    async def relay_error_handler(request: Request, exc: RelayException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": getattr(request.state, "request_id", "unknown")},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; the full exception is
        logged server-side. Debug mode adds the exception message and type.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content: dict[str, Any] = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
