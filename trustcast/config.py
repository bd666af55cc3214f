"""Configuration settings for trustcast."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_db_path() -> Path:
    return Path.home() / ".trustcast" / "trustcast.db"


class Settings(BaseSettings):
    """Engine settings loaded from environment (TRUSTCAST_*) or .env."""

    model_config = SettingsConfigDict(
        env_prefix="TRUSTCAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Storage
    db_path: Path = default_db_path()

    # Identity service
    identity_service_url: str = "https://id.chitty.cc"
    identity_service_token: str | None = None
    identity_timeout_seconds: float = Field(default=5.0, gt=0)

    # Logging
    log_level: str = "INFO"

    # Predictions sharing a bucket share an id, so re-running a tick upserts
    prediction_bucket_seconds: int = Field(default=60, gt=0)

    # Bounded windows
    interaction_window: int = Field(default=50, ge=1)
    session_risk_window: int = Field(default=10, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
