"""Custom exceptions for the upload relay."""

from typing import Any, Mapping, Optional


class RelayException(Exception):
    """Base class for relay exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error: str = "relay_error"

    def __init__(self, message: str = "Relay error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Convert to the JSON error payload."""
        return {"error": self.error, "message": self.message}


class RateLimitExceededError(RelayException):
    """Raised when the local rate limit still denies a call at the final attempt.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error = "rate_limit_exceeded"

    def __init__(
        self,
        provider: str,
        reset_at: Optional[int] = None,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.provider = provider
        self.reset_at = reset_at
        self.reason = reason
        super().__init__(message or f"Rate limit exceeded for {provider}")

    def to_response(self) -> dict[str, Any]:
        payload = super().to_response()
        payload["provider"] = self.provider
        if self.reason:
            payload["reason"] = self.reason
        if self.reset_at is not None:
            payload["reset_at"] = self.reset_at
        return payload


class RetriesExhaustedError(RateLimitExceededError):
    """Raised when the upstream kept answering 429 through every retry."""

    def __init__(self, provider: str, retries: int, reset_at: Optional[int] = None):
        self.retries = retries
        super().__init__(
            provider,
            reset_at=reset_at,
            message=f"Rate limit exceeded for {provider} after {retries} retries",
        )


class AuthenticationError(RelayException):
    """Raised when no upstream credential is available.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error = "authentication_failed"

    def __init__(self, detail: str = "Imgchest API token not configured"):
        self.detail = detail
        super().__init__(detail)


class InvalidUploadError(RelayException):
    """Raised for malformed upload requests.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error = "invalid_request"


class UpstreamPayloadError(RelayException):
    """Raised when an upstream answers with a payload that cannot be decoded.

    Treated as a transient fault inside the retry loop; maps to
    HTTP 502 Bad Gateway once retries are exhausted.
    """
    status_code = 502
    error = "upstream_payload_error"


class RateLimitPersistenceError(RelayException):
    """Raised when the rate limit state cannot be written."""
    status_code = 500
    error = "rate_limit_persistence_error"


class ChunkUploadError(RelayException):
    """Raised when one chunk of a chunked upload fails.

    The upload as a whole is reported as failed; no partial result is
    returned. ``chunk_index`` is 1-based.
    """
    error = "chunk_upload_failed"

    def __init__(
        self,
        chunk_index: int,
        status_code: int,
        message: str,
        details: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        reset_at: Optional[int] = None,
    ):
        self.chunk_index = chunk_index
        self.status_code = status_code
        self.details = details
        self.headers = dict(headers or {})
        self.reset_at = reset_at
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.message,
            "chunk": self.chunk_index,
            "status": self.status_code,
        }
        if self.details is not None:
            payload["details"] = self.details
        if self.reset_at is not None:
            payload["reset_at"] = self.reset_at
        return payload
