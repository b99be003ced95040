"""Tracked rate limit state endpoints."""

import hmac
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.ratelimit.models import now_ms
from relay.app.ratelimit.store import RateLimitStore, get_store

router = APIRouter(prefix="/rate-limits", tags=["rate-limits"])
logger = get_logger(__name__)


def require_admin(request: Request) -> None:
    """Check X-Admin-Token when an admin token is configured.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    expected = settings.admin_token.strip()
    if not expected:
        return
    token = request.headers.get("X-Admin-Token", "").strip()
    if not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")


def get_rate_limit_store() -> RateLimitStore:
    return get_store()


@router.get("", dependencies=[Depends(require_admin)])
async def get_rate_limits(
    store: RateLimitStore = Depends(get_rate_limit_store),
) -> Dict[str, Any]:
    """Current tracked windows, expired entries dropped."""
    store.cleanup_expired()
    return {"now": now_ms(), "rateLimits": store.snapshot()}


@router.delete("", dependencies=[Depends(require_admin)])
async def reset_rate_limits(
    store: RateLimitStore = Depends(get_rate_limit_store),
) -> Dict[str, Any]:
    """Forget every tracked window."""
    await store.reset()
    logger.warning("Rate limit state reset by admin request")
    return {"status": "reset", "rateLimits": store.snapshot()}
