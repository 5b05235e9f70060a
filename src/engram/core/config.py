"""
Configuration management.

Loads settings from environment variables and .env file.
Prefix: ENGRAM_

Building a Settings object never touches the filesystem; the database
directory is created by the storage engine when it connects.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    return Path.home() / ".engram"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ENGRAM_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    data_dir: Path = Field(default_factory=_default_data_dir, description="Data storage directory")
    db_name: str = Field(default="engram.db", description="SQLite database name")
    db_path: Path | None = Field(
        default=None,
        description="Explicit database file, overrides data_dir/db_name",
    )
    busy_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds a blocked writer waits for the lock before failing",
    )

    # Garbage collection
    gc_min_reviews: int = Field(default=5, ge=1, description="Reviews before a memory is GC-eligible")
    gc_min_ratio: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Minimum tap/review ratio to survive GC",
    )
    gc_promote_threshold: int = Field(default=3, ge=1, description="Taps needed for promotion")

    # Reporting
    hot_window_secs: int = Field(default=86400, gt=0, description="Hot memories window")
    hot_limit: int = Field(default=10, gt=0, description="Max hot memories reported")
    activity_days: int = Field(default=7, gt=0, description="Days covered by activity report")

    @property
    def database_path(self) -> Path:
        if self.db_path is not None:
            return self.db_path
        return self.data_dir / self.db_name


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()
