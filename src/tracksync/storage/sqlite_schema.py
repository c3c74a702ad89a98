"""SQLite schema definition for the local store."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from tracksync.core.entities import ENTITY_SPECS, EntitySpec

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

# ── Migrations ──────────────────────────────────────────────────────
# Each entry maps (from_version -> to_version) with a list of SQL statements.
# Migrations run sequentially in initialize() when db version < SCHEMA_VERSION.

MIGRATIONS: dict[tuple[int, int], list[str]] = {
    (1, 2): [
        "ALTER TABLE sync_queue ADD COLUMN next_attempt_at TEXT",
        "ALTER TABLE sync_queue ADD COLUMN last_error TEXT",
        "UPDATE sync_queue SET next_attempt_at = enqueued_at WHERE next_attempt_at IS NULL",
    ],
}


def quote(identifier: str) -> str:
    """Quote an identifier for use in SQL (names come from entity specs)."""
    return '"' + identifier.replace('"', '""') + '"'


def entity_table_sql(spec: EntitySpec) -> str:
    """CREATE TABLE/INDEX statements for one entity collection."""
    table = spec.table
    columns = [
        "id TEXT PRIMARY KEY",
        "created_at TEXT NOT NULL",
        "updated_at TEXT NOT NULL",
        "deleted INTEGER NOT NULL DEFAULT 0",
    ]
    columns.extend(f"{quote(f.name)} {f.sql_type}" for f in spec.fields)
    statements = [
        f"CREATE TABLE IF NOT EXISTS {quote(table)} (\n    " + ",\n    ".join(columns) + "\n);",
        f"CREATE INDEX IF NOT EXISTS {quote(f'idx_{table}_created')} "
        f"ON {quote(table)}(created_at);",
        f"CREATE INDEX IF NOT EXISTS {quote(f'idx_{table}_updated')} "
        f"ON {quote(table)}(updated_at);",
    ]
    for f in spec.fields:
        if f.indexed:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {quote(f'idx_{table}_{f.name}')} "
                f"ON {quote(table)}({quote(f.name)});"
            )
    return "\n".join(statements)


SYNC_SCHEMA = """
-- Pending remote mutations, drained in seq order per entity type
CREATE TABLE IF NOT EXISTS sync_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,  -- create, update, delete
    payload TEXT NOT NULL DEFAULT '{}',
    state TEXT NOT NULL DEFAULT 'pending',  -- pending, in_flight
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    enqueued_at TEXT NOT NULL,
    next_attempt_at TEXT,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_type ON sync_queue(entity_type, state, seq);
CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(entity_type, record_id);

-- Abandoned queue items
CREATE TABLE IF NOT EXISTS sync_failures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    retry_count INTEGER NOT NULL,
    error TEXT NOT NULL DEFAULT '',
    failed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_failures_time ON sync_failures(failed_at);

-- Single cached session -> account mapping
CREATE TABLE IF NOT EXISTS account_identity (
    slot INTEGER PRIMARY KEY CHECK (slot = 1),
    session_id TEXT NOT NULL,
    account_key INTEGER NOT NULL,
    cached_at TEXT NOT NULL
);
"""

SCHEMA = "\n".join(entity_table_sql(spec) for spec in ENTITY_SPECS.values()) + SYNC_SCHEMA


async def run_migrations(conn: aiosqlite.Connection, current_version: int) -> int:
    """Apply all pending migrations from current_version to SCHEMA_VERSION.

    Returns the final schema version after all migrations.
    """
    version = current_version

    while version < SCHEMA_VERSION:
        next_version = version + 1
        for sql in MIGRATIONS.get((version, next_version), []):
            try:
                await conn.execute(sql)
            except sqlite3.OperationalError as e:
                # Column may already exist after a partial migration
                message = str(e).lower()
                if "duplicate column" in message or "already exists" in message:
                    logger.debug("Migration already applied: %s", e)
                else:
                    raise
        version = next_version

    await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    await conn.commit()
    return version
