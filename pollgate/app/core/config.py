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

    # Prefer JSON, but tolerate plain comma/space separated values.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    origins: list[str] = []
    for part in parts:
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
            continue
        # Browsers include the scheme in the Origin header.
        origins.append(f"http://{part}")
        origins.append(f"https://{part}")

    seen: set[str] = set()
    result: list[str] = []
    for origin in origins:
        if origin in seen:
            continue
        seen.add(origin)
        result.append(origin)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Server binding (used by `python -m pollgate`)
    host: str = "0.0.0.0"
    port: int = 3000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Long polling settings
    long_poll_timeout_ms: int = 30000
    long_poll_resource_count: int = 5
    long_poll_resource_prefix: str = "EVENT#"
    long_poll_initial_value: int = 0
    long_poll_mutator_enabled: bool = True
    long_poll_mutator_max_delay_seconds: int = 32  # exclusive upper bound
    long_poll_mutator_max_increment: int = 10  # exclusive upper bound
    long_poll_disconnect_poll_interval: float = 0.5

    # Token bucket: 5 tokens, refilled at 1 token/second
    token_bucket_capacity: int = 5
    token_bucket_refill_rate: float = 1.0

    # Sliding window: 8 requests per 30 seconds
    sliding_window_max_requests: int = 8
    sliding_window_size_ms: int = 30000

    # Fixed window: 6 requests per 20 seconds
    fixed_window_max_requests: int = 6
    fixed_window_size_ms: int = 20000

    # Distributed (Redis) sliding window: 10 requests per 60 seconds
    distributed_max_requests: int = 10
    distributed_window_size_ms: int = 60000

    # LRU bound on per-client in-memory limiter state
    rate_limit_max_entries: int = 10000
    # Key clients by the first X-Forwarded-For hop; enable only behind a proxy
    trust_forwarded_for: bool = False
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis fails mid-check
    )

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_probe_interval_seconds: float = 5.0

    # CORS settings
    # NoDecode keeps misconfigured values from crashing JSON parsing at startup.
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "token_bucket_capacity",
        "sliding_window_max_requests",
        "fixed_window_max_requests",
        "distributed_max_requests",
        "rate_limit_max_entries",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "sliding_window_size_ms",
        "fixed_window_size_ms",
        "distributed_window_size_ms",
        "long_poll_timeout_ms",
    )
    @classmethod
    def validate_duration_positive(cls, v: int) -> int:
        """Validate window sizes and timeouts are positive."""
        if v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @field_validator(
        "token_bucket_refill_rate",
        "redis_probe_interval_seconds",
        "long_poll_disconnect_poll_interval",
    )
    @classmethod
    def validate_rate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Rates and intervals must be positive")
        return v

    @field_validator(
        "long_poll_mutator_max_delay_seconds",
        "long_poll_mutator_max_increment",
        "long_poll_resource_count",
    )
    @classmethod
    def validate_mutator_bounds(cls, v: int) -> int:
        """Validate mutator bounds leave a non-empty random range."""
        if v < 1:
            raise ValueError("long poll bounds must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
