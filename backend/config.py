"""
Runtime configuration for the mention leaderboard backend.

Values come from environment variables (a local .env file is loaded first).
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):
    """Process settings. One target handle per process."""
    x_bearer_token: Optional[str] = Field(default=None, description="X API bearer token")
    target_handle: str = Field(default="openservai", description="Tracked handle (without @)")

    cache_ttl: float = Field(default=300, gt=0, description="Seconds a snapshot is served from memory")
    full_refresh_interval: float = Field(default=3600, gt=0, description="Seconds between forced full rescans")
    incremental_check_interval: float = Field(default=120, gt=0, description="Scheduler tick in seconds")

    snapshot_path: str = Field(default="mentions_cache.json")

    page_delay: float = Field(default=1.0, ge=0, description="Seconds between result pages")
    max_pages: int = Field(default=100, ge=1)
    max_fetch_seconds: float = Field(default=300, gt=0, description="Wall-clock budget for one fetch")
    max_mentions: int = Field(default=10000, ge=1, description="Retention cap for cached mentions")

    background_refresh_on_read: bool = Field(default=True)
    auto_refresh: bool = Field(default=True, description="Run the background refresh scheduler")

    log_level: str = Field(default="INFO")
    port: int = Field(default=8000)

    @field_validator("target_handle")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        value = value.strip().lstrip("@")
        if not value:
            raise ValueError("target_handle must not be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @property
    def search_query(self) -> str:
        """Upstream search query for the tracked handle."""
        return f"@{self.target_handle}"


# Settings field -> environment variable
ENV_VARS = {
    "x_bearer_token": "X_BEARER_TOKEN",
    "target_handle": "TARGET_HANDLE",
    "cache_ttl": "CACHE_TTL",
    "full_refresh_interval": "FULL_REFRESH_INTERVAL",
    "incremental_check_interval": "INCREMENTAL_CHECK_INTERVAL",
    "snapshot_path": "SNAPSHOT_PATH",
    "page_delay": "PAGE_DELAY",
    "max_pages": "MAX_PAGES",
    "max_fetch_seconds": "MAX_FETCH_SECONDS",
    "max_mentions": "MAX_MENTIONS",
    "background_refresh_on_read": "BACKGROUND_REFRESH_ON_READ",
    "auto_refresh": "AUTO_REFRESH",
    "log_level": "LOG_LEVEL",
    "port": "PORT",
}


def load_settings(environ: Optional[dict] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read instead of os.environ (tests)

    Raises:
        pydantic.ValidationError: On invalid values
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values = {
        field: environ[var]
        for field, var in ENV_VARS.items()
        if environ.get(var) not in (None, "")
    }
    return Settings(**values)


__all__ = ["Settings", "load_settings", "ENV_VARS"]
