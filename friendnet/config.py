"""
Runtime configuration helpers for the friend network service.

Loads DATABASE_URL, presence timing and other variables from the .env file
located in the project root.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    # Required; comes from the environment or .env
    database_url: str = Field(..., alias="DATABASE_URL")

    # Optional fields
    app_name: str = Field(default="Friend Network", alias="APP_NAME")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Presence
    presence_heartbeat_seconds: float = Field(default=30.0, alias="PRESENCE_HEARTBEAT_SECONDS")
    presence_window_seconds: float = Field(default=90.0, alias="PRESENCE_WINDOW_SECONDS")
    presence_sweep_seconds: float = Field(default=60.0, alias="PRESENCE_SWEEP_SECONDS")
    disable_presence_sweep: bool = Field(default=False, alias="DISABLE_PRESENCE_SWEEP")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def heartbeat_interval(self) -> timedelta:
        return timedelta(seconds=self.presence_heartbeat_seconds)

    @property
    def heartbeat_window(self) -> timedelta:
        return timedelta(seconds=self.presence_window_seconds)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.presence_sweep_seconds)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
