"""
Centralized configuration management for the mistakebook application.
"""
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_DAILY_TARGET, DEFAULT_FORECAST_HORIZON_DAYS


def get_default_db_path() -> Path:
    """Returns the default path for the database file."""
    return Path.home() / ".mistakebook" / "mistakebook.db"


class Settings(BaseSettings):
    """
    Defines application settings, loaded from MISTAKEBOOK_* environment
    variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="MISTAKEBOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Core Paths ---
    db_path: Path = Field(default_factory=get_default_db_path)

    # --- Scheduling ---
    # Days of load forecast fetched before each scheduling decision.
    forecast_horizon_days: int = Field(default=DEFAULT_FORECAST_HORIZON_DAYS, ge=1)

    # Used until the learner stores their own daily target.
    default_daily_target: int = Field(default=DEFAULT_DAILY_TARGET, ge=1)

    # --- Review sessions ---
    continue_batch_size: int = Field(default=20, ge=1)
    # How many other items are shown before a requeued item reappears.
    requeue_gap: int = Field(default=3, ge=0)
    max_requeues_per_item: int = Field(default=3, ge=0)

    # --- Testing Configuration ---
    # When True, disables safety checks that prevent data loss during tests.
    # Should NEVER be enabled in production. Can be set via MISTAKEBOOK_TESTING_MODE.
    testing_mode: bool = False


# Create a singleton instance of the settings
settings = Settings()
