"""
Configuration using Pydantic Settings.

Values come from DOCQUEUE_* environment variables (or a .env file) with
defaults suitable for a local MongoDB.
"""

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class IndexScope(str, Enum):
    """
    Which fields the unique job index spans.

    JOB    — (job_id, queue): a job_id can never be enqueued twice on a queue,
             not even after it completed.
    STATUS — (job_id, queue, status): a completed job_id may be enqueued again.
    """

    JOB = "job"
    STATUS = "status"


class QueueSettings(BaseSettings):
    """docqueue settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DOCQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    mongo_url: str = "mongodb://localhost:27017"
    database: str = "docqueue"
    collection: str = "docqueue_jobs"
    index_scope: IndexScope = IndexScope.JOB

    # Worker
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float | None = None
    stale_timeout_seconds: float | None = None


@lru_cache
def get_settings() -> QueueSettings:
    """Get cached settings instance."""
    return QueueSettings()
