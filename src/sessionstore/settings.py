from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field, field_validator

from src.config.loader import get_float_env, get_int_env, get_str_env

DEFAULT_DB_PATH = "sessions.db"
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0
DEFAULT_POOL_SIZE = 4
DEFAULT_POOL_TIMEOUT_SECONDS = 5.0


class SessionStoreSettings(BaseModel):
    db_path: str = Field(default=DEFAULT_DB_PATH, description="SQLite database file.")
    cleanup_interval: float = Field(
        default=DEFAULT_CLEANUP_INTERVAL_SECONDS,
        ge=0,
        description="Seconds between expiry sweeps. 0 disables the sweep.",
    )
    pool_size: int = Field(default=DEFAULT_POOL_SIZE, ge=1, description="Maximum open connections.")
    pool_timeout: float = Field(
        default=DEFAULT_POOL_TIMEOUT_SECONDS,
        gt=0,
        description="Seconds to wait for a free connection.",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("db_path must not be empty")
        if value == ":memory:":
            raise ValueError("In-memory databases cannot be shared across pooled connections")
        return value

    @property
    def cleanup_timedelta(self) -> timedelta:
        return timedelta(seconds=self.cleanup_interval)

    @classmethod
    def from_env(cls) -> "SessionStoreSettings":
        """Read settings from SESSION_* environment variables."""
        return cls(
            db_path=get_str_env("SESSION_DB_PATH", DEFAULT_DB_PATH),
            cleanup_interval=get_float_env("SESSION_CLEANUP_INTERVAL", DEFAULT_CLEANUP_INTERVAL_SECONDS),
            pool_size=get_int_env("SESSION_POOL_SIZE", DEFAULT_POOL_SIZE),
            pool_timeout=get_float_env("SESSION_POOL_TIMEOUT", DEFAULT_POOL_TIMEOUT_SECONDS),
        )
