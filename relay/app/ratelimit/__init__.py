"""Rate limit tracking for upstream upload providers.

This package provides:
- Data models for tracked windows and retry parameters
- The RateLimitStore owning all tracked state
- The RateLimitPolicy pre-flight check
- Response interpretation (header parsing, throttle scope, wait times)
"""

from relay.app.ratelimit.interpreter import (
    RATE_LIMIT_HEADER_NAMES,
    UpstreamResult,
    classify_throttle,
    build_throttle_headers,
    compute_wait_ms,
    decode_upstream_response,
    extract_rate_limit_headers,
    parse_rate_limit_headers,
)
from relay.app.ratelimit.models import (
    DEFAULT_RETRY_CONFIG,
    MAX_IMGCHEST_IMAGES_PER_REQUEST,
    SXCU_GLOBAL_BUCKET,
    AllRateLimits,
    LimitReason,
    Provider,
    RateLimitCheckResult,
    RateLimitEntry,
    RateLimitHeaders,
    RetryConfig,
    create_rate_limit_entry,
    is_rate_limit_expired,
)
from relay.app.ratelimit.policy import RateLimitPolicy
from relay.app.ratelimit.store import RateLimitStore, get_store, reset_store

__all__ = [
    # Models
    "AllRateLimits",
    "DEFAULT_RETRY_CONFIG",
    "LimitReason",
    "MAX_IMGCHEST_IMAGES_PER_REQUEST",
    "Provider",
    "RateLimitCheckResult",
    "RateLimitEntry",
    "RateLimitHeaders",
    "RetryConfig",
    "SXCU_GLOBAL_BUCKET",
    "create_rate_limit_entry",
    "is_rate_limit_expired",
    # Interpretation
    "RATE_LIMIT_HEADER_NAMES",
    "UpstreamResult",
    "classify_throttle",
    "build_throttle_headers",
    "compute_wait_ms",
    "decode_upstream_response",
    "extract_rate_limit_headers",
    "parse_rate_limit_headers",
    # State and policy
    "RateLimitPolicy",
    "RateLimitStore",
    "get_store",
    "reset_store",
]
