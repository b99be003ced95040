"""Rate limiting data models.

This module contains the dataclasses describing tracked rate limit windows,
parsed rate limit headers, pre-flight decisions and retry parameters.
All timestamps are integer epoch milliseconds.
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Provider(str, Enum):
    """Upstream upload providers."""
    CATBOX = "catbox"
    SXCU = "sxcu"
    IMGCHEST = "imgchest"


class LimitReason(str, Enum):
    """Why a pre-flight check denied a call."""
    BUCKET = "bucket"
    GLOBAL = "global"
    UNKNOWN = "unknown"


# Imgchest: one global window, 60 requests per minute
IMGCHEST_REQUESTS_PER_MINUTE = 60
IMGCHEST_WINDOW_MS = 60_000

# Sxcu: global window shared by every bucket
SXCU_GLOBAL_REQUESTS_PER_MINUTE = 240
SXCU_GLOBAL_WINDOW_MS = 60_000
SXCU_GLOBAL_BUCKET = "__sxcu_global__"

MAX_IMGCHEST_IMAGES_PER_REQUEST = 20

SAFETY_MARGIN_MS = 100
DEFAULT_WAIT_MS = 60_000
TRANSIENT_RETRY_DELAY_MS = 1_000

DEFAULT_ENTRY_LIMIT = 60
DEFAULT_ENTRY_WINDOW_MS = 60_000

# Longest relative reset taken at face value
MAX_RESET_AFTER_MS = 86_400_000


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def reset_after_to_ms(reset_after: float) -> int:
    """Convert a relative reset in seconds to milliseconds, clamped to one day."""
    if not math.isfinite(reset_after) or reset_after * 1000 > MAX_RESET_AFTER_MS:
        return MAX_RESET_AFTER_MS
    return math.ceil(reset_after * 1000)


@dataclass
class RateLimitEntry:
    """Known state of one throttled resource (a global window or a bucket)."""
    limit: int
    remaining: int
    reset_at: int
    window_start: int
    last_updated: int

    def __post_init__(self) -> None:
        if self.remaining > self.limit:
            self.remaining = self.limit
        if self.reset_at <= self.window_start:
            self.reset_at = self.window_start + 1

    def is_expired(self, now: Optional[int] = None) -> bool:
        """An entry is expired from its reset instant onwards."""
        return (now_ms() if now is None else now) >= self.reset_at

    def consume(self, now: int, cost: int = 1) -> None:
        """Decrement optimistically when no fresh header was seen."""
        self.remaining = max(0, self.remaining - cost)
        self.last_updated = now

    def to_dict(self) -> Dict[str, int]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at,
            "windowStart": self.window_start,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RateLimitEntry":
        """Build an entry from its serialized form.

        Raises:
            ValueError: If a field is missing or not a finite number
        """
        if not isinstance(data, dict):
            raise ValueError(f"rate limit entry must be an object, got {type(data).__name__}")
        values = []
        for key in ("limit", "remaining", "resetAt", "windowStart", "lastUpdated"):
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"rate limit entry field {key!r} is invalid: {value!r}")
            if isinstance(value, float) and not math.isfinite(value):
                raise ValueError(f"rate limit entry field {key!r} is not finite: {value!r}")
            values.append(int(value))
        return cls(*values)


def is_rate_limit_expired(entry: RateLimitEntry, now: Optional[int] = None) -> bool:
    return entry.is_expired(now)


@dataclass
class RateLimitHeaders:
    """Rate limit signals extracted from one upstream response.

    Fields absent from the response stay None so "unknown" can be told
    apart from zero.
    """
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None          # absolute, epoch seconds
    reset_after: Optional[float] = None  # relative, seconds
    bucket: Optional[str] = None
    is_global: Optional[bool] = None

    def has_window(self) -> bool:
        return self.limit is not None and self.remaining is not None


def create_rate_limit_entry(headers: RateLimitHeaders, now: Optional[int] = None) -> RateLimitEntry:
    """Build a fresh entry from response headers.

    The reset instant comes from reset_after, then reset, then a default
    one-minute window.
    """
    now = now_ms() if now is None else now
    if headers.reset_after is not None:
        reset_at = now + reset_after_to_ms(headers.reset_after)
    elif headers.reset is not None:
        reset_at = headers.reset * 1000
    else:
        reset_at = now + DEFAULT_ENTRY_WINDOW_MS

    return RateLimitEntry(
        limit=headers.limit if headers.limit is not None else DEFAULT_ENTRY_LIMIT,
        remaining=headers.remaining if headers.remaining is not None else DEFAULT_ENTRY_LIMIT - 1,
        reset_at=reset_at,
        window_start=now,
        last_updated=now,
    )


@dataclass
class AllRateLimits:
    """Every tracked window, partitioned by provider."""
    imgchest: Optional[RateLimitEntry] = None
    sxcu_global: Optional[RateLimitEntry] = None
    sxcu_buckets: Dict[str, RateLimitEntry] = field(default_factory=dict)
    catbox: Optional[RateLimitEntry] = None

    def is_empty(self) -> bool:
        return (
            self.imgchest is None
            and self.sxcu_global is None
            and not self.sxcu_buckets
            and self.catbox is None
        )

    def to_dict(self) -> Dict[str, Any]:
        def dump(entry: Optional[RateLimitEntry]) -> Optional[Dict[str, int]]:
            return entry.to_dict() if entry is not None else None

        return {
            "imgchest": {"default": dump(self.imgchest)},
            "sxcu": {
                "buckets": {name: e.to_dict() for name, e in self.sxcu_buckets.items()},
                "global": dump(self.sxcu_global),
            },
            "catbox": {"default": dump(self.catbox)},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AllRateLimits":
        """Parse the persisted layout.

        Raises:
            ValueError: If the layout does not match
        """
        if not isinstance(data, dict):
            raise ValueError("rate limit state must be an object")

        def load(section: Any, key: str) -> Optional[RateLimitEntry]:
            if section is None:
                return None
            if not isinstance(section, dict):
                raise ValueError(f"rate limit section must be an object, got {section!r}")
            value = section.get(key)
            return RateLimitEntry.from_dict(value) if value is not None else None

        sxcu = data.get("sxcu") or {}
        if not isinstance(sxcu, dict):
            raise ValueError("sxcu section must be an object")
        raw_buckets = sxcu.get("buckets") or {}
        if not isinstance(raw_buckets, dict):
            raise ValueError("sxcu buckets must be an object")

        return cls(
            imgchest=load(data.get("imgchest"), "default"),
            sxcu_global=load(sxcu, "global"),
            sxcu_buckets={
                str(name): RateLimitEntry.from_dict(entry)
                for name, entry in raw_buckets.items()
            },
            catbox=load(data.get("catbox"), "default"),
        )


@dataclass(frozen=True)
class RateLimitCheckResult:
    """Result of a pre-flight rate limit check."""
    allowed: bool
    wait_ms: int = 0
    reason: Optional[LimitReason] = None
    bucket: Optional[str] = None
    reset_at: Optional[int] = None
    limit: Optional[int] = None


ALLOWED = RateLimitCheckResult(allowed=True)


@dataclass(frozen=True)
class RetryConfig:
    """Immutable retry parameters.

    Attributes:
        max_retries: Retries after the first attempt (default: 5)
        base_delay_ms: Backoff delay of attempt 0 (default: 1000)
        max_delay_ms: Cap for any single wait (default: 120000)
        jitter_ms: Upper bound of the uniform jitter (default: 500)

    Example:
        >>> config = RetryConfig(max_retries=2, base_delay_ms=10)
    """
    max_retries: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 120_000
    jitter_ms: int = 500

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        from relay.app.core.config import settings

        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_ms=settings.retry_jitter_ms,
        )


DEFAULT_RETRY_CONFIG = RetryConfig()
