"""Application configuration from environment variables via pydantic-settings.

Invariants:
    - get_settings() is cached (lru_cache): one instance per process
    - Every setting has a default so the service starts with no .env file
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="PINGPICK_", case_sensitive=False
    )

    app_name: str = "pingpick"

    # Sweeper
    sweep_interval_seconds: float = 30.0

    # Pings
    default_radius_km: float = 3.0
    single_active_reservation: bool = False

    # Record store retries
    store_retry_attempts: int = 3
    store_retry_base_delay_ms: int = 100
    store_retry_max_delay_ms: int = 2_000

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("sweep_interval_seconds", "default_radius_km")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("store_retry_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        return max(1, v)


@lru_cache
def get_settings() -> Settings:
    return Settings()
