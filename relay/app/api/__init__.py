"""API endpoints package for the relay."""

from relay.app.api.rate_limits import router as rate_limits_router
from relay.app.api.upload import router as upload_router

__all__ = [
    "rate_limits_router",
    "upload_router",
]
