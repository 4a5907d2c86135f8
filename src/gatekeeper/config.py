"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Store
    store_backend: str = "memory"  # "memory", "sql" or "redis"
    store_timeout_ms: int = 200  # Upper bound on a single store round trip
    database_url: str = "sqlite:///data/gatekeeper.db"
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "gatekeeper:"

    # Calendar
    timezone: str = "UTC"  # Deployment timezone for daily quota resets
    clock_skew_tolerance_seconds: int = 300

    # Daily quota
    daily_limit: int = 5  # Free metered calls per identity per day
    quota_fail_open: bool = True  # Admit free-tier calls when the store is down

    # Window counting
    window_seconds: int = 3600

    # Adaptive gate
    base_limit: int = 100
    hard_limit: int = 200
    escalation_threshold: int = 3
    base_block_seconds: int = 60
    backoff_multiplier: float = 2.0
    max_block_seconds: int = 86400  # 24 hours
    gate_policy_path: str | None = None  # JSON file of per-endpoint overrides

    # Retention
    window_retention_days: int = 30
    pruning_interval_minutes: int = 60

    # Logging
    log_level: str = "INFO"

    # API
    admin_api_key: str | None = None  # Required for /v1/admin routes
    inspect_requests: bool = True  # Feed request anomalies to the gate
    max_payload_bytes: int = 50_000
    allowed_domains: list[str] = []  # URL allowlist (empty = allow all external)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
