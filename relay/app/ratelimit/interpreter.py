"""Interpretation of upstream responses.

Each provider answers in its own shape. ``decode_upstream_response`` turns a
raw httpx response into one ``UpstreamResult`` carrying the canonical
``RateLimitHeaders`` before any shared rate limit logic runs.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from relay.app.exceptions import UpstreamPayloadError
from relay.app.ratelimit.models import (
    DEFAULT_WAIT_MS,
    SAFETY_MARGIN_MS,
    Provider,
    RateLimitHeaders,
    now_ms,
    reset_after_to_ms,
)

HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RESET_AFTER = "X-RateLimit-Reset-After"
HEADER_BUCKET = "X-RateLimit-Bucket"
HEADER_GLOBAL = "X-RateLimit-Global"

RATE_LIMIT_HEADER_NAMES = (
    HEADER_LIMIT,
    HEADER_REMAINING,
    HEADER_RESET,
    HEADER_RESET_AFTER,
    HEADER_BUCKET,
    HEADER_GLOBAL,
)

# Sxcu reports a global throttle with error code 2
SXCU_GLOBAL_ERROR_CODE = 2
GLOBAL_ERROR_MARKER = "Global rate limit"

# Largest integer a numeric header may carry
MAX_HEADER_INT = 2 ** 53 - 1


@dataclass
class UpstreamResult:
    """One upstream HTTP attempt, decoded."""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    rate_limit: RateLimitHeaders = field(default_factory=RateLimitHeaders)
    body: Any = None
    is_global_error: Optional[bool] = None
    raw_text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


def _get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None and not isinstance(headers, httpx.Headers):
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        number = _parse_float(value)
        if number is None:
            return None
        parsed = int(number)
    return parsed if abs(parsed) <= MAX_HEADER_INT else None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitHeaders:
    """Extract rate limit signals from response headers.

    Args:
        headers: Response headers (httpx.Headers or any mapping)

    Returns:
        RateLimitHeaders with absent fields left as None
    """
    result = RateLimitHeaders(
        limit=_parse_int(_get_header(headers, HEADER_LIMIT)),
        remaining=_parse_int(_get_header(headers, HEADER_REMAINING)),
        reset=_parse_int(_get_header(headers, HEADER_RESET)),
        reset_after=_parse_float(_get_header(headers, HEADER_RESET_AFTER)),
    )

    bucket = _get_header(headers, HEADER_BUCKET)
    if bucket:
        result.bucket = bucket

    is_global = _get_header(headers, HEADER_GLOBAL)
    if is_global is not None and is_global.strip().lower() not in ("", "false", "0"):
        result.is_global = True

    return result


def extract_rate_limit_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy only the rate limit headers, for re-emitting to the caller."""
    copied: Dict[str, str] = {}
    for name in RATE_LIMIT_HEADER_NAMES:
        value = _get_header(headers, name)
        if value:
            copied[name] = value
    return copied


def build_throttle_headers(reset_at: Optional[int], now: Optional[int] = None) -> Dict[str, str]:
    """Headers telling a throttled client when to come back."""
    headers = {HEADER_REMAINING: "0"}
    if reset_at is not None:
        now = now_ms() if now is None else now
        headers[HEADER_RESET] = str(math.ceil(reset_at / 1000))
        headers["Retry-After"] = str(max(1, math.ceil((reset_at - now) / 1000)))
    return headers


def _body_as_dict(body: Union[Mapping[str, Any], str, bytes, None]) -> Optional[Mapping[str, Any]]:
    if isinstance(body, Mapping):
        return body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            parsed = json.loads(body)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def is_global_error_body(body: Union[Mapping[str, Any], str, bytes, None]) -> bool:
    """Check a 429 body for the provider's global throttle marker."""
    data = _body_as_dict(body)
    if data is None:
        return False
    if data.get("code") == SXCU_GLOBAL_ERROR_CODE:
        return True
    for key in ("error", "message"):
        text = data.get(key)
        if isinstance(text, str) and GLOBAL_ERROR_MARKER in text:
            return True
    return False


def classify_throttle(
    status_code: int,
    headers: RateLimitHeaders,
    body: Union[Mapping[str, Any], str, bytes, None] = None,
) -> bool:
    """Decide whether a throttled response is global scope.

    The explicit header wins; otherwise the body is inspected since not every
    global throttle carries the header. Silent or unparseable bodies are
    treated as bucket scope.

    Returns:
        True for a global throttle, False for a bucket throttle or non-429
    """
    if status_code != 429:
        return False
    if headers.is_global:
        return True
    return is_global_error_body(body)


def compute_wait_ms(headers: RateLimitHeaders, now: Optional[int] = None) -> int:
    """Wait time before retrying, from the most trustworthy signal.

    reset_after (relative) beats reset (absolute); no usable signal, or a
    reset already in the past, falls back to a full default window.
    """
    if headers.reset_after is not None and headers.reset_after > 0:
        return reset_after_to_ms(headers.reset_after) + SAFETY_MARGIN_MS

    if headers.reset is not None:
        now = now_ms() if now is None else now
        reset_ms = headers.reset * 1000
        if reset_ms > now:
            return reset_ms - now + SAFETY_MARGIN_MS

    return DEFAULT_WAIT_MS + SAFETY_MARGIN_MS


def _decode_sxcu(response: httpx.Response, rate_limit: RateLimitHeaders) -> UpstreamResult:
    text = response.text
    try:
        body = json.loads(text)
    except ValueError:
        body = {"error": text}

    is_global_error = None
    if response.status_code == 429:
        is_global_error = classify_throttle(response.status_code, rate_limit, body)

    return UpstreamResult(
        status_code=response.status_code,
        headers=dict(response.headers),
        rate_limit=rate_limit,
        body=body,
        is_global_error=is_global_error,
        raw_text=text,
    )


def _decode_imgchest(response: httpx.Response, rate_limit: RateLimitHeaders) -> UpstreamResult:
    text = response.text
    if text.strip().startswith("<"):
        raise UpstreamPayloadError("Unauthorized or API error - received HTML response")
    try:
        body = json.loads(text)
    except ValueError as e:
        raise UpstreamPayloadError(f"Failed to parse JSON: {text[:200]}") from e

    return UpstreamResult(
        status_code=response.status_code,
        headers=dict(response.headers),
        rate_limit=rate_limit,
        body=body,
        raw_text=text,
    )


def _decode_catbox(response: httpx.Response, rate_limit: RateLimitHeaders) -> UpstreamResult:
    text = response.text
    return UpstreamResult(
        status_code=response.status_code,
        headers=dict(response.headers),
        rate_limit=rate_limit,
        body=text,
        raw_text=text,
    )


_DECODERS = {
    Provider.SXCU: _decode_sxcu,
    Provider.IMGCHEST: _decode_imgchest,
    Provider.CATBOX: _decode_catbox,
}


def decode_upstream_response(provider: Provider, response: httpx.Response) -> UpstreamResult:
    """Decode a provider response into the canonical UpstreamResult.

    Raises:
        UpstreamPayloadError: If the provider sent a payload it never sends
            on success (HTML or broken JSON from imgchest)
    """
    rate_limit = parse_rate_limit_headers(response.headers)
    return _DECODERS[Provider(provider)](response, rate_limit)
