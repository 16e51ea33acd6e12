"""
Taskflow configuration -- all environment variables in one place.

Read from environment at import. Nothing here is required: with no
DATABASE_URL the app runs against the in-memory store.
"""

from __future__ import annotations

import os


class Settings:
    """Application settings from environment variables."""

    # Database / change feed
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "")
    DB_POOL_MIN_SIZE: int = int(os.environ.get("DB_POOL_MIN_SIZE", "2"))
    DB_POOL_MAX_SIZE: int = int(os.environ.get("DB_POOL_MAX_SIZE", "10"))
    TASKFLOW_NOTIFY_CHANNEL: str = os.environ.get("TASKFLOW_NOTIFY_CHANNEL", "taskflow_changes")
    FEED_QUEUE_SIZE: int = int(os.environ.get("FEED_QUEUE_SIZE", "1000"))

    # Denormalized join fallbacks
    UNKNOWN_SENDER_NAME: str = os.environ.get("UNKNOWN_SENDER_NAME", "Unknown")
    DEFAULT_ROLE: str = os.environ.get("DEFAULT_ROLE", "client")

    # Application
    ENVIRONMENT: str = os.environ.get("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()

    @property
    def use_postgres(self) -> bool:
        return bool(self.DATABASE_URL)


# Singleton instance
settings = Settings()

if settings.DEFAULT_ROLE not in ("admin", "employee", "client"):
    raise RuntimeError(f"DEFAULT_ROLE must be admin, employee or client, got {settings.DEFAULT_ROLE!r}")
