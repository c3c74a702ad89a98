"""Configuration management for tracksync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".tracksync" / "tracksync.db"


@dataclass
class Config:
    """
    Runtime configuration.

    Loaded from environment variables with sensible defaults. Remote sync is
    enabled only when both the backend URL and key are present; otherwise the
    system runs local-only.
    """

    # Remote backend
    remote_url: str | None = None
    remote_key: str | None = None

    # Local storage
    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    storage_quota_bytes: int = 50 * 1024 * 1024

    # Remote calls
    push_timeout: float = 10.0
    pull_timeout: float = 20.0
    max_request_retries: int = 3
    retry_base_delay: float = 2.0
    page_size: int = 50
    max_page_size: int = 1000

    # Read cache
    cache_ttl: float = 300.0
    cache_max_entries: int = 256

    # Background queue
    queue_max_retries: int = 3
    queue_retry_delay: float = 5.0
    drain_interval: float = 30.0
    min_drain_interval: float = 5.0

    # Reporting and maintenance
    admin_page_size: int = 1000
    admin_max_rows: int = 10000
    retention_days: int = 30

    @property
    def remote_enabled(self) -> bool:
        return bool(self.remote_url) and bool(self.remote_key)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""

        def get_int(key: str, default: int) -> int:
            value = os.getenv(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_float(key: str, default: float) -> float:
            value = os.getenv(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError:
                return default

        def get_str(key: str) -> str | None:
            value = os.getenv(key, "").strip()
            return value or None

        db_path = get_str("TRACKSYNC_DB_PATH")

        return cls(
            remote_url=get_str("TRACKSYNC_REMOTE_URL"),
            remote_key=get_str("TRACKSYNC_REMOTE_KEY"),
            db_path=Path(db_path).expanduser() if db_path else DEFAULT_DB_PATH,
            storage_quota_bytes=get_int("TRACKSYNC_STORAGE_QUOTA", 50 * 1024 * 1024),
            push_timeout=get_float("TRACKSYNC_PUSH_TIMEOUT", 10.0),
            pull_timeout=get_float("TRACKSYNC_PULL_TIMEOUT", 20.0),
            max_request_retries=get_int("TRACKSYNC_REQUEST_RETRIES", 3),
            retry_base_delay=get_float("TRACKSYNC_RETRY_BASE_DELAY", 2.0),
            page_size=get_int("TRACKSYNC_PAGE_SIZE", 50),
            max_page_size=get_int("TRACKSYNC_MAX_PAGE_SIZE", 1000),
            cache_ttl=get_float("TRACKSYNC_CACHE_TTL", 300.0),
            cache_max_entries=get_int("TRACKSYNC_CACHE_MAX_ENTRIES", 256),
            queue_max_retries=get_int("TRACKSYNC_QUEUE_MAX_RETRIES", 3),
            queue_retry_delay=get_float("TRACKSYNC_QUEUE_RETRY_DELAY", 5.0),
            drain_interval=get_float("TRACKSYNC_DRAIN_INTERVAL", 30.0),
            min_drain_interval=get_float("TRACKSYNC_MIN_DRAIN_INTERVAL", 5.0),
            admin_page_size=get_int("TRACKSYNC_ADMIN_PAGE_SIZE", 1000),
            admin_max_rows=get_int("TRACKSYNC_ADMIN_MAX_ROWS", 10000),
            retention_days=get_int("TRACKSYNC_RETENTION_DAYS", 30),
        )
