"""Rate limit state store.

The store exclusively owns the tracked ``AllRateLimits`` state. It is created
once per process and injected into the policy and the retry orchestrator;
an ``asyncio.Lock`` serializes every read-modify-write so concurrent
uploads against the same provider never lose updates to ``remaining``.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from relay.app.core.cache import CacheBackend
from relay.app.core.logging import get_log_context, get_logger
from relay.app.exceptions import RateLimitPersistenceError
from relay.app.ratelimit.models import (
    IMGCHEST_WINDOW_MS,
    SXCU_GLOBAL_REQUESTS_PER_MINUTE,
    SXCU_GLOBAL_WINDOW_MS,
    AllRateLimits,
    Provider,
    RateLimitEntry,
    RateLimitHeaders,
    create_rate_limit_entry,
    now_ms,
)

logger = get_logger(__name__)

DEFAULT_STATE_KEY = "rateLimits"


class RateLimitStore:
    """Owner of all tracked rate limit windows.

    Mutations (``record_success``/``record_throttle``/``reset``) persist the
    full state before returning, so state survives a restart between two
    HTTP attempts.
    """

    def __init__(self, backend: CacheBackend, state_key: str = DEFAULT_STATE_KEY):
        self._backend = backend
        self._state_key = state_key
        self._state = AllRateLimits()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> AllRateLimits:
        """Current state; read-only for callers."""
        return self._state

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def load(self) -> None:
        """Load persisted state.

        Missing or corrupt data resets to the unconstrained default and is
        never raised to the caller.
        """
        async with self._lock:
            try:
                raw = await self._backend.get(self._state_key)
            except Exception as e:
                logger.warning(f"Could not read rate limit state, starting empty: {e}")
                self._state = AllRateLimits()
                return

            if raw is None:
                self._state = AllRateLimits()
                return

            try:
                self._state = AllRateLimits.from_dict(json.loads(raw))
            except (ValueError, TypeError, OverflowError, RecursionError) as e:
                logger.warning(f"Discarding corrupt rate limit state: {e!r}")
                self._state = AllRateLimits()
                return

            removed = self.cleanup_expired()
            logger.info(
                f"Loaded rate limit state ({removed} expired entries dropped)"
            )

    def cleanup_expired(self, now: Optional[int] = None) -> int:
        """Drop every expired entry.

        Expired entries are removed rather than refreshed; the next real
        signal recreates them.

        Returns:
            Number of entries removed
        """
        now = now_ms() if now is None else now
        state = self._state
        removed = 0

        if state.imgchest is not None and state.imgchest.is_expired(now):
            state.imgchest = None
            removed += 1

        if state.sxcu_global is not None and state.sxcu_global.is_expired(now):
            state.sxcu_global = None
            removed += 1

        for bucket in [b for b, e in state.sxcu_buckets.items() if e.is_expired(now)]:
            del state.sxcu_buckets[bucket]
            removed += 1

        if state.catbox is not None and state.catbox.is_expired(now):
            state.catbox = None
            removed += 1

        return removed

    async def _persist(self, now: Optional[int] = None) -> None:
        self.cleanup_expired(now)
        payload = json.dumps(self._state.to_dict()).encode("utf-8")
        try:
            await self._backend.set(self._state_key, payload)
        except Exception as e:
            raise RateLimitPersistenceError(f"Failed to persist rate limit state: {e}") from e

    async def save(self) -> None:
        """Write the full current state.

        Raises:
            RateLimitPersistenceError: If the backend write fails
        """
        async with self._lock:
            await self._persist()

    async def reset(self) -> None:
        """Clear to the unconstrained default and persist."""
        async with self._lock:
            self._state = AllRateLimits()
            await self._persist()

    def snapshot(self) -> Dict[str, Any]:
        """Serialized view of the current state."""
        return self._state.to_dict()

    def get_entry(self, provider: Provider, bucket: Optional[str] = None) -> Optional[RateLimitEntry]:
        """Tracked entry for a provider; sxcu takes a bucket id or the global entry."""
        provider = Provider(provider)
        if provider is Provider.IMGCHEST:
            return self._state.imgchest
        if provider is Provider.CATBOX:
            return self._state.catbox
        if bucket is None:
            return self._state.sxcu_global
        return self._state.sxcu_buckets.get(bucket)

    async def record_success(
        self,
        provider: Provider,
        headers: RateLimitHeaders,
        now: Optional[int] = None,
    ) -> None:
        """Account for a completed, non-throttled upstream call."""
        await self._record(provider, headers, is_global=False, now=now)

    async def record_throttle(
        self,
        provider: Provider,
        headers: RateLimitHeaders,
        is_global: bool,
        now: Optional[int] = None,
    ) -> None:
        """Account for an upstream 429."""
        await self._record(provider, headers, is_global=is_global, now=now)

    async def _record(
        self,
        provider: Provider,
        headers: RateLimitHeaders,
        is_global: bool,
        now: Optional[int],
    ) -> None:
        provider = Provider(provider)
        if provider is Provider.CATBOX:
            return

        now = now_ms() if now is None else now
        async with self._lock:
            if provider is Provider.IMGCHEST:
                self._update_imgchest(headers, now)
            else:
                self._update_sxcu(headers, is_global, now)
            await self._persist(now)

    def _update_imgchest(self, headers: RateLimitHeaders, now: int) -> None:
        if headers.has_window():
            self._state.imgchest = RateLimitEntry(
                limit=headers.limit,
                remaining=headers.remaining,
                reset_at=now + IMGCHEST_WINDOW_MS,
                window_start=now,
                last_updated=now,
            )
        elif self._state.imgchest is not None:
            self._state.imgchest.consume(now)

    def _update_sxcu(self, headers: RateLimitHeaders, is_global: bool, now: int) -> None:
        state = self._state

        if is_global or headers.is_global:
            state.sxcu_global = create_rate_limit_entry(
                RateLimitHeaders(
                    limit=SXCU_GLOBAL_REQUESTS_PER_MINUTE,
                    remaining=0,
                    reset=headers.reset,
                    reset_after=headers.reset_after,
                ),
                now,
            )
            logger.warning(
                "Global rate limit recorded",
                extra=get_log_context(provider=Provider.SXCU.value, reset_at=state.sxcu_global.reset_at),
            )
        elif state.sxcu_global is not None:
            state.sxcu_global.consume(now)
        else:
            state.sxcu_global = RateLimitEntry(
                limit=SXCU_GLOBAL_REQUESTS_PER_MINUTE,
                remaining=SXCU_GLOBAL_REQUESTS_PER_MINUTE - 1,
                reset_at=now + SXCU_GLOBAL_WINDOW_MS,
                window_start=now,
                last_updated=now,
            )

        if headers.bucket and headers.has_window():
            state.sxcu_buckets[headers.bucket] = create_rate_limit_entry(headers, now)


# Global store instance
_store_instance: Optional[RateLimitStore] = None


def get_store() -> RateLimitStore:
    """Get or create the application's rate limit store.

    Only the application wiring (lifespan and dependencies) calls this;
    components receive the store by injection.
    """
    global _store_instance
    if _store_instance is None:
        from relay.app.core.cache import get_cache
        from relay.app.core.config import settings

        _store_instance = RateLimitStore(get_cache(), settings.rate_limit_state_key)
    return _store_instance


def reset_store() -> None:
    """Drop the global store instance (for tests)."""
    global _store_instance
    _store_instance = None
