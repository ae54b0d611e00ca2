"""Application configuration."""

import logging
import os
from datetime import tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

APP_NAME = "time-ledger"
DB_NAME = "timeledger.db"


def default_data_dir() -> Path:
    """Return the per-user data directory for the journal file."""
    base = os.environ.get("XDG_DATA_HOME") or (Path.home() / ".local" / "share")
    return Path(base) / APP_NAME


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    database_path: str = ""
    store_mode: Literal["session", "slot"] = "session"

    @property
    def database_file(self) -> Path:
        """Resolve the SQLite file, falling back to the user data dir."""
        if self.database_path:
            return Path(self.database_path).expanduser()
        return default_data_dir() / DB_NAME

    @property
    def database_url(self) -> str:
        """SQLAlchemy async URL for the journal file."""
        return f"sqlite+aiosqlite:///{self.database_file}"

    # Goals
    daily_goal_seconds: int = 8 * 3600
    slot_target_minutes: int = 30

    # Presentation
    short_id_length: int = 8
    timezone: str = ""

    @property
    def tz(self) -> tzinfo | None:
        """Configured timezone, or None for the system local zone."""
        return ZoneInfo(self.timezone) if self.timezone else None

    # App settings
    log_level: str = "WARNING"
    json_logs: bool = False
    debug: bool = False

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject goal, target and id-length values the ledger cannot use."""
        if self.daily_goal_seconds <= 0:
            raise ValueError("daily_goal_seconds must be positive")
        if self.slot_target_minutes <= 0:
            raise ValueError("slot_target_minutes must be positive")
        if self.short_id_length < 4:
            # Shorter prefixes collide too often to be useful for resolution
            raise ValueError("short_id_length must be at least 4")
        if self.timezone:
            try:
                ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"Unknown timezone: {self.timezone}") from None
        if self.debug and self.log_level.upper() != "DEBUG":
            logger.debug("Debug mode enabled, forcing DEBUG log level")
            self.log_level = "DEBUG"
        return self

    class Config:
        env_prefix = "TIMELEDGER_"
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
