"""
Application configuration.
Uses pydantic-settings so every value can be overridden from the environment or a .env file.
"""

import sys
from typing import Optional

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables take precedence over the defaults specified here.
    """
    DATABASE_URL: str = Field("mongodb://localhost:27017")
    DATABASE_NAME: str = Field("skill_swap")
    SNAPSHOT_COLLECTION: str = Field("snapshot")
    SNAPSHOT_KEY: str = Field("skillSwapData")
    BAN_CHECK_INTERVAL: float = Field(3.0, gt=0)
    PORT: int = Field(8000)
    FRONTEND_URL: str = Field("*")
    DEFAULT_ADMIN_NAME: str = Field("Default Admin")
    DEFAULT_ADMIN_EMAIL: str = Field("")  # empty: first registered user becomes admin
    LOG_LEVEL: str = Field("INFO")
    LOG_FILE: str = Field("")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Cache the settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the settings instance.

    Returns:
        Settings: The settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route loguru output to stderr and, optionally, a rotating log file."""
    settings = settings or get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.LOG_LEVEL)
    if settings.LOG_FILE:
        logger.add(settings.LOG_FILE, rotation="10 MB", level="DEBUG")
