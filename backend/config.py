"""Application settings, read from ``STUDY_SRS_*`` environment variables or ``.env``."""

from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    SQLite doesn't store tz info, so every timestamp in the card store is
    naive UTC.
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STUDY_SRS_", env_file=".env")

    app_name: str = "Study SRS"
    database_url: str = f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'study_srs.db'}"
    debug: bool = False

    # Scheduling
    scheduling_strategy: Literal["sm2", "sm2_adjusted"] = "sm2"
    max_ease_factor: float | None = Field(default=5.0, ge=1.3)  # None leaves ease unbounded
    mastery_interval_days: int = Field(default=365, ge=1)

    # Sessions
    max_reviews_per_session: int = Field(default=20, ge=1)
    grade_max_attempts: int = Field(default=3, ge=1)
    finished_session_ttl_seconds: float = Field(default=3600.0, ge=0)  # How long COMPLETE sessions stay readable
    default_owner_id: str = "local"

    # Storage
    storage_timeout_seconds: float = Field(default=10.0, gt=0)

    # Statistics
    retention_window_days: int = Field(default=30, ge=1)


settings = Settings()
