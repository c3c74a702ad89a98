"""SQLite storage backend for the local-first store."""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite

from tracksync.core.entities import EntityType
from tracksync.errors import StorageError
from tracksync.storage.base import ChangeListener, LocalStore, StorageHealth
from tracksync.storage.sqlite_identity import SQLiteIdentityMixin
from tracksync.storage.sqlite_records import SQLiteRecordMixin
from tracksync.storage.sqlite_schema import SCHEMA, SCHEMA_VERSION, run_migrations
from tracksync.storage.sqlite_sync_queue import SQLiteSyncQueueMixin
from tracksync.utils.observers import HandlerSet
from tracksync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

MAX_ERRORS = 100
RECENT_ERROR_WINDOW = timedelta(hours=1)
DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024

QUOTA_EXCEEDED = "quota_exceeded"
CORRUPTION = "corruption"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class StorageErrorEntry:
    code: str
    message: str
    operation: str
    occurred_at: datetime


def classify_sqlite_error(exc: sqlite3.Error) -> str:
    """Map a sqlite3 error to a StorageError code."""
    message = str(exc).lower()
    if "full" in message:
        return QUOTA_EXCEEDED
    if "malformed" in message or "not a database" in message or "corrupt" in message:
        return CORRUPTION
    return UNAVAILABLE


class SQLiteLocalStore(
    SQLiteRecordMixin,
    SQLiteSyncQueueMixin,
    SQLiteIdentityMixin,
    LocalStore,
):
    """SQLite-based durable local store.

    One writer connection; all writes are serialized through it so writes to
    the same record from one caller apply in call order. Data persists to
    disk and survives restarts. A byte quota is enforced with
    ``PRAGMA max_page_count``.
    """

    def __init__(self, db_path: str | Path, *, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self._db_path = Path(db_path).expanduser().resolve()
        self._quota_bytes = quota_bytes
        self._conn: aiosqlite.Connection | None = None
        self._listeners = HandlerSet("store change")
        self._errors: deque[StorageErrorEntry] = deque(maxlen=MAX_ERRORS)
        self._total_errors = 0

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open the database and create or migrate the schema.

        For existing databases, pending migrations run first, then the full
        schema is applied (CREATE ... IF NOT EXISTS).
        """
        if self._conn is not None:
            return

        async with self._guard("initialize"):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self._db_path)
            self._conn.row_factory = aiosqlite.Row

            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._apply_quota(self._conn)

            await self._conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
            )
            await self._conn.commit()

            async with self._conn.execute("SELECT version FROM schema_version") as cursor:
                row = await cursor.fetchone()

            if row is not None and row["version"] < SCHEMA_VERSION:
                logger.info("Migrating local store from v%d to v%d", row["version"], SCHEMA_VERSION)
                await run_migrations(self._conn, row["version"])

            await self._conn.executescript(SCHEMA)

            if row is None:
                await self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                await self._conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        return self._listeners.subscribe(listener)

    async def health(self) -> StorageHealth:
        """Quota usage and recent error history."""
        async with self._guard("health"):
            conn = self._ensure_conn()
            async with conn.execute("PRAGMA page_count") as cursor:
                page_count_row = await cursor.fetchone()
            async with conn.execute("PRAGMA page_size") as cursor:
                page_size_row = await cursor.fetchone()
        used = (page_count_row[0] if page_count_row else 0) * (
            page_size_row[0] if page_size_row else 0
        )
        cutoff = utcnow() - RECENT_ERROR_WINDOW
        recent = sum(1 for e in self._errors if e.occurred_at >= cutoff)
        last = self._errors[-1] if self._errors else None
        return StorageHealth(
            is_healthy=recent == 0 and used < self._quota_bytes * 0.9,
            used_bytes=used,
            quota_bytes=self._quota_bytes,
            available_bytes=max(self._quota_bytes - used, 0),
            total_errors=self._total_errors,
            recent_errors=recent,
            last_error=last.message if last else None,
            last_error_code=last.code if last else None,
            last_error_at=last.occurred_at if last else None,
        )

    # ------------------------------------------------------------------
    # Internals shared with the mixins
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        """Ensure the writer connection is available."""
        if self._conn is None:
            raise StorageError(
                "Local store not initialized. Call initialize() first.",
                code=UNAVAILABLE,
            )
        return self._conn

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Translate sqlite3 failures into StorageError and record them."""
        try:
            yield
        except sqlite3.Error as e:
            code = classify_sqlite_error(e)
            self._record_error(code, str(e), operation)
            logger.error("Local store %s failed (%s): %s", operation, code, e)
            if self._conn is not None and self._conn.in_transaction:
                await self._rollback()
            raise StorageError(f"{operation} failed: {e}", code=code, operation=operation) from e

    async def _rollback(self) -> None:
        assert self._conn is not None
        try:
            await self._conn.rollback()
        except sqlite3.Error:
            logger.warning("Rollback after storage failure also failed", exc_info=True)

    def _record_error(self, code: str, message: str, operation: str) -> None:
        self._total_errors += 1
        self._errors.append(StorageErrorEntry(code, message, operation, utcnow()))

    def _notify_changed(self, entity_type: EntityType, record_ids: Iterable[str]) -> None:
        self._listeners.publish(EntityType(entity_type), tuple(record_ids))

    async def _apply_quota(self, conn: aiosqlite.Connection) -> None:
        async with conn.execute("PRAGMA page_size") as cursor:
            row = await cursor.fetchone()
        page_size = row[0] if row and row[0] else 4096
        max_pages = max(self._quota_bytes // page_size, 1)
        await conn.execute(f"PRAGMA max_page_count = {int(max_pages)}")
