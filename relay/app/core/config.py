import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # JSON list is the documented format; comma or whitespace separated
    # values are accepted as well.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Relay settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 120.0  # uploads can be slow to acknowledge
    httpx_write_timeout: float = 120.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 50
    httpx_max_keepalive_connections: int = 10

    # Upstream providers
    catbox_api_url: str = "https://catbox.moe/user/api.php"
    sxcu_api_base_url: str = "https://sxcu.net/api"
    imgchest_api_base_url: str = "https://api.imgchest.com/v1"
    upstream_user_agent: str = "CatboxUploader/2.0"

    # Imgchest token used when the client does not send its own
    imgchest_api_token: str = ""
    imgchest_max_images_per_request: int = 20

    # Retry policy defaults (milliseconds)
    retry_max_retries: int = 5
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 120000
    retry_jitter_ms: int = 500

    # Rate limit state persistence
    rate_limit_backend: str = "file"  # memory | file | redis
    rate_limit_state_dir: str = ".relay-state"
    rate_limit_state_key: str = "rateLimits"
    redis_url: str = "redis://localhost:6379/0"

    # Guards /rate-limits when set
    admin_token: str = ""

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the persistence backend name."""
        v = v.strip().lower()
        if v not in ("memory", "file", "redis"):
            raise ValueError("rate_limit_backend must be one of: memory, file, redis")
        return v

    @field_validator("retry_max_retries", "retry_jitter_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate retry counters are not negative."""
        if v < 0:
            raise ValueError("retry values must not be negative")
        return v

    @field_validator(
        "retry_base_delay_ms",
        "retry_max_delay_ms",
        "imgchest_max_images_per_request",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate values that must be at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
