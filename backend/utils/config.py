"""
Pathwarden Configuration Module.

Centralizes all configuration settings using Pydantic Settings.
Requires Python 3.11+.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file into os.environ at module import time
# This ensures nested BaseSettings classes can read the values
_env_file = Path(__file__).parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    # Try current working directory
    load_dotenv()


class WatchSettings(BaseSettings):
    """Watch engine configuration settings."""

    model_config = SettingsConfigDict(env_prefix="WATCH_")

    backend: Literal["auto", "native", "polling"] = Field(
        default="auto", description="Platform watch backend"
    )
    recursive_mode: Literal["auto", "native", "emulated"] = Field(
        default="auto",
        description="Use the backend's recursive watches or one watch per directory",
    )
    polling_interval_s: float = Field(default=1.0, gt=0.0, le=60.0)
    queue_depth: int = Field(default=1024, ge=1, description="Pending events per subscription")
    max_workers: int = Field(default=4, ge=1, le=64, description="Handler worker threads")
    coalesce_window_ms: int = Field(default=0, ge=0, le=5000)
    health_check_interval_s: float = Field(default=5.0, gt=0.0)
    join_timeout_s: float = Field(default=10.0, gt=0.0)


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="json")  # "json" or "console"

    @field_validator("format")
    @classmethod
    def check_format(cls, v: str) -> str:
        """Only json and console renderers exist."""
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError(f"unknown log format: {v}")
        return v


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Sub-settings
    watch: WatchSettings = Field(default_factory=WatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns singleton instance of Settings.
    """
    return Settings()
