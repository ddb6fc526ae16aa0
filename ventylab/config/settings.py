from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings - only define what needs validation."""

    # Remote progress API
    API_BASE_URL: str = "http://localhost:3001/api"
    API_TOKEN: str | None = None
    API_USER_ID: str | None = None
    REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Write coalescing
    POSITION_UPDATE_THRESHOLD_SECONDS: int = 5  # Minimum playback move before a write
    FLUSH_INTERVAL_SECONDS: float = 30.0  # Periodic outbox flush

    # Outbox reconciliation
    RECONCILIATION_DELAY_MS: int = 200  # Pause between replayed events
    MAX_RECONCILIATION_BATCH_SIZE: int = 10
    RATE_LIMIT_RETRY_DELAY_MS: int = 5000
    MAX_RETRY_ATTEMPTS: int = 5
    CONFIRMATION_MAX_AGE_SECONDS: int = 7 * 24 * 60 * 60  # 7 days
    OUTBOX_PATH: str | None = None  # JSON file; in-memory when unset

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    if settings.POSITION_UPDATE_THRESHOLD_SECONDS < 1:
        msg = "POSITION_UPDATE_THRESHOLD_SECONDS must be at least 1"
        raise ValueError(msg)
    if settings.MAX_RECONCILIATION_BATCH_SIZE < 1:
        msg = "MAX_RECONCILIATION_BATCH_SIZE must be positive"
        raise ValueError(msg)
    return settings
