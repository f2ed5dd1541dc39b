from pathlib import Path

from pydantic import Field, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env file.

    Cache sizes and TTLs are per data category: ``general`` for assorted
    lookups, ``vehicle`` for vehicle-data responses, ``valuation`` for
    valuations, and ``auth`` for upstream access tokens.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Caches
    general_cache_max_size: PositiveInt = 2000
    general_cache_ttl_ms: PositiveInt = 900_000
    vehicle_cache_max_size: PositiveInt = 500
    vehicle_cache_ttl_ms: PositiveInt = 1_800_000
    valuation_cache_max_size: PositiveInt = 1000
    valuation_cache_ttl_ms: PositiveInt = 900_000
    auth_cache_max_size: PositiveInt = 100
    auth_cache_ttl_ms: PositiveInt = 600_000
    cache_cleanup_interval_ms: PositiveInt = 300_000
    cache_single_flight: bool = False

    # Performance monitor
    metrics_max_records: PositiveInt = 10_000
    metrics_cleanup_interval_ms: PositiveInt = 3_600_000
    metrics_retention_ms: PositiveInt = 86_400_000
    slow_response_ms: PositiveInt = 5000
    healthy_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    unhealthy_success_rate: float = Field(default=0.80, ge=0.0, le=1.0)

    # Circuit breakers around upstream providers
    breaker_fail_max: PositiveInt = 5
    breaker_reset_timeout: float = Field(default=60.0, gt=0)

    # Diagnostics server — transport, bind address, and auth
    mcp_transport: str = "stdio"
    mcp_host: str = "0.0.0.0"
    mcp_port: int = 8000
    mcp_auth_token: str | None = None
    mcp_read_token: str | None = None

    # Paths & logging
    data_dir: Path = Path(__file__).resolve().parent.parent / "data"
    log_level: str = "INFO"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached Settings singleton. Created on first call."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached settings. Used in tests."""
    global _settings  # noqa: PLW0603
    _settings = None
