import random
import string
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _generate_node_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"node-{suffix}"


def _parse_paths(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]
    return [p.strip() for p in str(raw).split(",") if p.strip()]


class Settings(BaseSettings):
    """Rate limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    They are read once at startup; there is no hot reload.
    """

    # Service settings
    app_port: int = 3000
    app_env: str = "development"
    node_id: str = Field(default_factory=_generate_node_id)

    # Redis settings (shared counter store)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0
    redis_max_retries: int = 3  # Connect attempts after the first failure
    redis_retry_step_ms: int = 100  # Linear backoff step (100ms x attempt)
    redis_retry_max_delay_ms: int = 2000  # Backoff ceiling
    redis_operation_timeout: float = 1.0  # Seconds per store round trip

    # Rate limiting defaults
    default_rate_limit: int = 100
    default_window_ms: int = 60000  # 1 minute
    burst_ratio: float = 0.1  # burst = ceil(limit * ratio) when unspecified
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = ["/health"]

    # Node liveness settings
    heartbeat_interval_ms: int = 5000
    heartbeat_ttl_seconds: int = 30
    shutdown_timeout_seconds: float = 2.0

    # Consistent hash ring
    ring_replicas: int = 256

    # Local fallback cache
    local_cache_max_keys: int = 10000
    local_cache_retention_ms: int = 3600000  # 1 hour
    local_cache_cleanup_interval_seconds: float = 60.0

    # Usage statistics
    stats_ttl_seconds: int = 86400  # 24 hours

    # Admin API (disabled while empty)
    admin_token: str = ""

    # Logging settings
    log_level: str = ""  # Empty means DEBUG in development, INFO elsewhere
    log_format: str = "text"  # text | structured | json
    log_dir: str = ""  # error.log and combined.log outside production; empty disables

    @property
    def redis_url(self) -> str:
        """Build the Redis connection URL from the redis_* settings."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "INFO" if self.app_env == "production" else "DEBUG"

    @field_validator("rate_limit_exempt_paths", mode="before")
    @classmethod
    def decode_exempt_paths(cls, v: Any) -> list[str]:
        return _parse_paths(v)

    @field_validator(
        "default_rate_limit",
        "default_window_ms",
        "heartbeat_interval_ms",
        "heartbeat_ttl_seconds",
        "ring_replicas",
        "local_cache_max_keys",
        "local_cache_retention_ms",
        "stats_ttl_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counters, windows and TTLs are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("burst_ratio")
    @classmethod
    def validate_burst_ratio(cls, v: float) -> float:
        """Validate burst ratio is non-negative."""
        if v < 0:
            raise ValueError("burst_ratio must not be negative")
        return v

    @field_validator(
        "redis_operation_timeout",
        "shutdown_timeout_seconds",
        "local_cache_cleanup_interval_seconds",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("redis_max_retries", "redis_retry_step_ms", "redis_retry_max_delay_ms")
    @classmethod
    def validate_retry_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry settings must not be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
