import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_path_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma or whitespace separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    return [p for p in re.split(r"[,\s]+", raw) if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Admission control (fixed window, per client identifier)
    rate_limit_requests_per_window: int = 60
    rate_limit_window_seconds: int = 60
    rate_limit_lock_stripes: int = 64
    # Paths that bypass admission control entirely
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = []

    # Outbound retry (exponential backoff, no jitter, no cap)
    retry_max_retries: int = 2
    retry_base_delay: float = 1.0

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0  # Time to establish connection
    httpx_read_timeout: float = 60.0  # Time to read response data
    httpx_write_timeout: float = 10.0  # Time to send request data
    httpx_pool_timeout: float = 5.0  # Time to acquire connection from pool
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_exempt_paths", mode="before")
    @classmethod
    def decode_exempt_paths(cls, v: Any) -> list[str]:
        return _parse_path_list(v)

    @field_validator(
        "rate_limit_requests_per_window",
        "rate_limit_window_seconds",
        "rate_limit_lock_stripes",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("retry_max_retries")
    @classmethod
    def validate_retry_budget(cls, v: int) -> int:
        """Validate the retry budget is not negative."""
        if v < 0:
            raise ValueError("retry_max_retries must not be negative")
        return v

    @field_validator(
        "retry_base_delay",
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate delay and timeout values are positive."""
        if v <= 0:
            raise ValueError("Delay and timeout values must be positive")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
