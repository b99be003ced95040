"""Retry orchestration with rate limit awareness.

Every upstream call goes through ``RetryOrchestrator.execute_with_retry``:
pre-flight check against the store, one HTTP attempt, interpretation of the
answer, store update, then either a result or a computed wait and another
attempt.

Two providers share the loop but differ in what happens on a local denial
or a remote 429. Imgchest waits internally and only returns once the work is
done or retries are exhausted; sxcu hands the 429 straight back so the
client can pace itself. The difference is carried by ``ProviderProfile``.
"""

import asyncio
import math
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from relay.app.core.logging import get_log_context, get_logger
from relay.app.exceptions import (
    AuthenticationError,
    InvalidUploadError,
    RateLimitExceededError,
    RetriesExhaustedError,
)
from relay.app.ratelimit.interpreter import (
    HEADER_BUCKET,
    HEADER_GLOBAL,
    HEADER_LIMIT,
    HEADER_REMAINING,
    HEADER_RESET,
    UpstreamResult,
    classify_throttle,
    compute_wait_ms,
)
from relay.app.ratelimit.models import (
    DEFAULT_RETRY_CONFIG,
    TRANSIENT_RETRY_DELAY_MS,
    LimitReason,
    Provider,
    RateLimitCheckResult,
    RateLimitHeaders,
    RetryConfig,
    now_ms,
    reset_after_to_ms,
)
from relay.app.ratelimit.policy import RateLimitPolicy
from relay.app.ratelimit.store import RateLimitStore

logger = get_logger(__name__)

Operation = Callable[[], Awaitable[UpstreamResult]]
SleepFunc = Callable[[float], Awaitable[None]]

# Errors that retrying cannot fix
TERMINAL_ERRORS = (AuthenticationError, InvalidUploadError)


@dataclass(frozen=True)
class ProviderProfile:
    """How the orchestrator treats one provider.

    Attributes:
        tracks_state: Consult and update the store for this provider
        return_on_local_denial: Hand throttles back to the caller immediately
            instead of waiting and retrying
    """
    tracks_state: bool = True
    return_on_local_denial: bool = False


PROVIDER_PROFILES: Dict[Provider, ProviderProfile] = {
    Provider.IMGCHEST: ProviderProfile(tracks_state=True, return_on_local_denial=False),
    Provider.SXCU: ProviderProfile(tracks_state=True, return_on_local_denial=True),
    Provider.CATBOX: ProviderProfile(tracks_state=False, return_on_local_denial=False),
}


def calculate_exponential_backoff(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    rand: Callable[[], float] = random.random,
) -> int:
    """Backoff for a given attempt in milliseconds.

    delay = min(base_delay_ms * 2^attempt, max_delay_ms) + uniform(0, jitter_ms)

    Args:
        attempt: The current attempt number (0-indexed)
        config: Retry parameters
        rand: Source of uniform values in [0, 1)
    """
    exponential = config.base_delay_ms * math.pow(2, attempt)
    capped = min(exponential, config.max_delay_ms)
    return math.floor(capped + rand() * config.jitter_ms)


def synthesize_denial(check: RateLimitCheckResult) -> UpstreamResult:
    """Build the 429 returned to the caller when the local check denies sxcu."""
    headers = {HEADER_REMAINING: "0"}
    if check.reset_at is not None:
        headers[HEADER_RESET] = str(math.ceil(check.reset_at / 1000))
    if check.limit is not None:
        headers[HEADER_LIMIT] = str(check.limit)
    if check.bucket:
        headers[HEADER_BUCKET] = check.bucket
    if check.reason is LimitReason.GLOBAL:
        headers[HEADER_GLOBAL] = "true"

    return UpstreamResult(
        status_code=429,
        headers=headers,
        rate_limit=RateLimitHeaders(
            limit=check.limit,
            remaining=0,
            reset=math.ceil(check.reset_at / 1000) if check.reset_at is not None else None,
            bucket=check.bucket,
            is_global=True if check.reason is LimitReason.GLOBAL else None,
        ),
        body={"error": "Rate limit exceeded"},
        is_global_error=check.reason is LimitReason.GLOBAL,
    )


class RetryOrchestrator:
    """Runs upstream operations under the tracked rate limits.

    State machine per call:
    PreflightCheck -> Executing -> Interpreting -> Success | Retrying | Exhausted
    """

    def __init__(
        self,
        store: RateLimitStore,
        policy: Optional[RateLimitPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
        profiles: Optional[Dict[Provider, ProviderProfile]] = None,
        rand: Callable[[], float] = random.random,
    ):
        self._store = store
        self._policy = policy or RateLimitPolicy(store)
        self._sleep = sleep
        self._clock = clock
        self._profiles = profiles or PROVIDER_PROFILES
        self._rand = rand

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def profile(self, provider: Provider) -> ProviderProfile:
        return self._profiles.get(Provider(provider), ProviderProfile())

    def backoff_ms(self, attempt: int, config: RetryConfig) -> int:
        return calculate_exponential_backoff(attempt, config, self._rand)

    async def _wait(self, wait_ms: int, attempt: int, config: RetryConfig, provider: Provider) -> None:
        """Sleep for the larger of the signalled wait and our own backoff, capped."""
        actual = min(max(wait_ms, self.backoff_ms(attempt, config)), config.max_delay_ms)
        logger.info(
            f"Waiting {actual}ms before retry {attempt + 1}/{config.max_retries}",
            extra=get_log_context(provider=provider.value, attempt=attempt, wait_ms=actual),
        )
        await self._sleep(actual / 1000)

    async def execute_with_retry(
        self,
        provider: Provider,
        operation: Operation,
        config: Optional[RetryConfig] = None,
        bucket: Optional[str] = None,
    ) -> UpstreamResult:
        """Execute an upstream operation with rate limiting and retries.

        Args:
            provider: Upstream provider the operation talks to
            operation: Coroutine factory performing exactly one HTTP attempt
            config: Retry parameters (defaults to DEFAULT_RETRY_CONFIG)
            bucket: Bucket already known for this operation, if any

        Returns:
            The first non-throttled result, or for immediate-return providers
            the throttled result itself

        Raises:
            RateLimitExceededError: Local check still denies at the final attempt
            RetriesExhaustedError: Upstream still throttles at the final attempt
            Exception: The operation's last error once retries are exhausted
        """
        provider = Provider(provider)
        config = config or DEFAULT_RETRY_CONFIG
        profile = self.profile(provider)

        for attempt in range(config.max_retries + 1):
            # PreflightCheck
            if profile.tracks_state:
                now = self._clock()
                self._store.cleanup_expired(now)
                check = self._policy.check_allowed(provider, bucket, cost=1, now=now)

                if not check.allowed:
                    logger.info(
                        f"Pre-flight check denied: {check.reason.value if check.reason else 'unknown'}",
                        extra=get_log_context(
                            provider=provider.value,
                            bucket=check.bucket,
                            attempt=attempt,
                            wait_ms=check.wait_ms,
                        ),
                    )
                    if profile.return_on_local_denial:
                        return synthesize_denial(check)
                    if attempt == config.max_retries:
                        raise RateLimitExceededError(
                            provider.value,
                            reset_at=check.reset_at,
                            reason=check.reason.value if check.reason else None,
                        )
                    await self._wait(check.wait_ms, attempt, config, provider)
                    continue

            # Executing
            try:
                result = await operation()
            except TERMINAL_ERRORS:
                raise
            except Exception as e:
                if attempt == config.max_retries:
                    logger.warning(
                        f"Max retries ({config.max_retries}) exceeded: {type(e).__name__}: {e}",
                        extra=get_log_context(provider=provider.value, attempt=attempt),
                    )
                    raise
                logger.warning(
                    f"Transient error on attempt {attempt + 1}: {type(e).__name__}: {e}",
                    extra=get_log_context(provider=provider.value, attempt=attempt),
                )
                await self._wait(TRANSIENT_RETRY_DELAY_MS, attempt, config, provider)
                continue

            if result.rate_limit.bucket:
                bucket = result.rate_limit.bucket

            # Interpreting
            if not result.is_rate_limited:
                if profile.tracks_state:
                    await self._store.record_success(provider, result.rate_limit, now=self._clock())
                return result

            is_global = self._resolve_scope(result)
            result.is_global_error = is_global
            if profile.tracks_state:
                await self._store.record_throttle(
                    provider, result.rate_limit, is_global=is_global, now=self._clock()
                )
            logger.warning(
                f"Upstream rate limited (global={is_global})",
                extra=get_log_context(
                    provider=provider.value,
                    bucket=result.rate_limit.bucket,
                    attempt=attempt,
                    status_code=429,
                ),
            )

            if profile.return_on_local_denial:
                return result

            # Retrying
            if attempt == config.max_retries:
                raise RetriesExhaustedError(
                    provider.value,
                    config.max_retries,
                    reset_at=self._known_reset_at(provider, result.rate_limit),
                )

            wait_ms = compute_wait_ms(result.rate_limit, self._clock()) if profile.tracks_state else 0
            await self._wait(wait_ms, attempt, config, provider)

        # Only reachable with a negative max_retries
        raise RateLimitExceededError(provider.value, message=f"No attempt made for {provider.value}")

    @staticmethod
    def _resolve_scope(result: UpstreamResult) -> bool:
        """Global vs bucket scope: operation flag, then header, then body."""
        if result.is_global_error is not None:
            return bool(result.is_global_error or result.rate_limit.is_global)
        if result.rate_limit.is_global:
            return True
        return classify_throttle(result.status_code, result.rate_limit, result.body)

    def _known_reset_at(self, provider: Provider, headers: RateLimitHeaders) -> Optional[int]:
        if headers.reset is not None:
            return headers.reset * 1000
        if headers.reset_after is not None:
            return self._clock() + reset_after_to_ms(headers.reset_after)
        entry = self._store.get_entry(provider)
        return entry.reset_at if entry is not None else None
