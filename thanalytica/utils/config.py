"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database (SQLite fallback when unset, see database.session)
    DATABASE_URL: Optional[str] = None
    SQL_DEBUG: bool = False

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Lightweight API
    API_TIMEOUT_SECONDS: float = 8.0
    RETRY_AFTER_SECONDS: int = 30

    # Background recomputation
    RECOMPUTE_MAX_WORKERS: int = 4
    RECOMPUTE_IN_FLIGHT_SECONDS: int = 300
    ENGINE_MAX_WORKERS: int = 4

    # Scheduled jobs
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TIMEZONE: str = "America/New_York"
    SCHEDULER_POLL_SECONDS: int = 30

    DAILY_JOB_ACTIVE_DAYS: int = 7
    DAILY_JOB_CHUNK_SIZE: int = 50
    DAILY_JOB_PARALLELISM: int = 10

    CORRELATION_JOB_MIN_DAYS: int = 30
    CORRELATION_JOB_CHUNK_SIZE: int = 25
    CORRELATION_JOB_PARALLELISM: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
