"""
Stageflow - Configuration
=========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"

    # ==========================================================================
    # Storage (one SQLite file for app settings, one per project)
    # ==========================================================================
    DATA_DIR: Path = Path("./data")
    APP_DATABASE_NAME: str = "app.db"
    DATABASE_ECHO: bool = False

    # Lock contention retry
    DB_LOCK_MAX_RETRIES: int = 5
    DB_LOCK_BASE_DELAY: float = 0.05
    DB_LOCK_MAX_DELAY: float = 2.0

    # ==========================================================================
    # Pipeline
    # ==========================================================================
    DEFAULT_COMPLETION_STRATEGY: Literal["pr", "merge"] = "pr"

    # ==========================================================================
    # Issue Tracker (Linear)
    # ==========================================================================
    ISSUE_TRACKER_API_URL: str = "https://api.linear.app/graphql"
    ISSUE_TRACKER_API_KEY: str | None = None
    ISSUE_TRACKER_PAGE_SIZE: int = 50
    ISSUE_TRACKER_TIMEOUT: float = 30.0
    ISSUE_TRACKER_MAX_RETRIES: int = 3
    ISSUE_TRACKER_BASE_DELAY: float = 1.0
    ISSUE_TRACKER_MAX_DELAY: float = 10.0

    # ==========================================================================
    # Logging
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def app_database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.DATA_DIR / self.APP_DATABASE_NAME}"

    def project_database_url(self, project_id: str) -> str:
        return f"sqlite+aiosqlite:///{self.DATA_DIR / f'{project_id}.db'}"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
