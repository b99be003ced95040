"""Pre-flight rate limit decisions.

The policy never mutates state; it reads the store and answers whether a
call of a given cost may go out now, and if not, how long to wait.
"""

from typing import Optional

from relay.app.ratelimit.models import (
    ALLOWED,
    SAFETY_MARGIN_MS,
    SXCU_GLOBAL_BUCKET,
    LimitReason,
    Provider,
    RateLimitCheckResult,
    RateLimitEntry,
    now_ms,
)
from relay.app.ratelimit.store import RateLimitStore


def _deny(
    entry: RateLimitEntry,
    now: int,
    reason: LimitReason,
    bucket: Optional[str] = None,
) -> RateLimitCheckResult:
    wait_ms = entry.reset_at - now + SAFETY_MARGIN_MS
    return RateLimitCheckResult(
        allowed=False,
        wait_ms=max(wait_ms, SAFETY_MARGIN_MS),
        reason=reason,
        bucket=bucket,
        reset_at=entry.reset_at,
        limit=entry.limit,
    )


def _exhausted(entry: Optional[RateLimitEntry], now: int, cost: int) -> bool:
    return entry is not None and not entry.is_expired(now) and entry.remaining < cost


class RateLimitPolicy:
    """Decides whether a prospective upstream call is allowed now."""

    def __init__(self, store: RateLimitStore):
        self._store = store

    def check_allowed(
        self,
        provider: Provider,
        bucket: Optional[str] = None,
        cost: int = 1,
        now: Optional[int] = None,
    ) -> RateLimitCheckResult:
        """Check a call against the tracked windows.

        For sxcu the global window is checked before the bucket window: a
        global throttle supersedes every bucket.

        Args:
            provider: Upstream provider
            bucket: Sxcu bucket already learned during this operation, if any
            cost: Calls this request consumes
            now: Current time in epoch ms (defaults to the wall clock)
        """
        provider = Provider(provider)
        now = now_ms() if now is None else now
        state = self._store.state

        if provider is Provider.IMGCHEST:
            if _exhausted(state.imgchest, now, cost):
                return _deny(state.imgchest, now, LimitReason.BUCKET)
            return ALLOWED

        if provider is Provider.SXCU:
            if _exhausted(state.sxcu_global, now, cost):
                return _deny(state.sxcu_global, now, LimitReason.GLOBAL, SXCU_GLOBAL_BUCKET)
            if bucket:
                entry = state.sxcu_buckets.get(bucket)
                if _exhausted(entry, now, cost):
                    return _deny(entry, now, LimitReason.BUCKET, bucket)
            return ALLOWED

        return ALLOWED
