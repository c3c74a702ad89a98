"""SQLite sync queue operations mixin.

Persists pending remote mutations so they survive restarts, plus a log of
items abandoned after exhausting their retry budget.
"""

from __future__ import annotations

import json
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tracksync.core.entities import EntityType
from tracksync.core.record import Operation
from tracksync.core.sync_item import ItemState, SyncFailure, SyncQueueItem
from tracksync.utils.timeutils import parse_timestamp, to_local_text, utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


class SQLiteSyncQueueMixin:
    """Mixin providing durable queue storage for the background sync queue."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteLocalStore at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _guard(self, operation: str) -> AbstractAsyncContextManager[None]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        """Insert a new queue item. Returns it with ``seq`` assigned."""
        async with self._guard("enqueue"):
            conn = self._ensure_conn()
            cursor = await conn.execute(
                """INSERT INTO sync_queue
                   (item_id, entity_type, record_id, operation, payload, state,
                    retry_count, max_retries, enqueued_at, next_attempt_at, last_error)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    item.id,
                    item.entity_type.value,
                    item.record_id,
                    item.operation.value,
                    json.dumps(item.payload),
                    item.state.value,
                    item.retry_count,
                    item.max_retries,
                    to_local_text(item.enqueued_at),
                    to_local_text(item.next_attempt_at),
                    item.last_error,
                ),
            )
            await conn.commit()
        return replace(item, seq=cursor.lastrowid or 0)

    async def update_queue_item(self, item: SyncQueueItem) -> None:
        """Persist the mutable state of an existing item."""
        async with self._guard("update_queue_item"):
            conn = self._ensure_conn()
            await conn.execute(
                """UPDATE sync_queue
                   SET operation = ?, payload = ?, state = ?, retry_count = ?,
                       next_attempt_at = ?, last_error = ?
                   WHERE item_id = ?""",
                (
                    item.operation.value,
                    json.dumps(item.payload),
                    item.state.value,
                    item.retry_count,
                    to_local_text(item.next_attempt_at),
                    item.last_error,
                    item.id,
                ),
            )
            await conn.commit()

    async def claim_queue_item(self, item_id: str) -> SyncQueueItem | None:
        """Move a pending item to in-flight. Returns its current state, or None
        if it is no longer pending."""
        async with self._guard("claim_queue_item"):
            conn = self._ensure_conn()
            cursor = await conn.execute(
                "UPDATE sync_queue SET state = ? WHERE item_id = ? AND state = ?",
                (ItemState.IN_FLIGHT.value, item_id, ItemState.PENDING.value),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                return None
            async with conn.execute(
                "SELECT * FROM sync_queue WHERE item_id = ?", (item_id,)
            ) as select:
                row = await select.fetchone()
        return _row_to_item(dict(row)) if row is not None else None

    async def delete_queue_item(self, item_id: str) -> bool:
        async with self._guard("delete_queue_item"):
            conn = self._ensure_conn()
            cursor = await conn.execute("DELETE FROM sync_queue WHERE item_id = ?", (item_id,))
            await conn.commit()
            return cursor.rowcount > 0

    async def find_pending_item(
        self, entity_type: EntityType, record_id: str
    ) -> SyncQueueItem | None:
        """Latest pending (not in-flight) item for a record, if any."""
        async with self._guard("find_pending_item"):
            conn = self._ensure_conn()
            async with conn.execute(
                """SELECT * FROM sync_queue
                   WHERE entity_type = ? AND record_id = ? AND state = ?
                   ORDER BY seq DESC LIMIT 1""",
                (EntityType(entity_type).value, record_id, ItemState.PENDING.value),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_item(dict(row)) if row is not None else None

    async def load_queue_items(
        self,
        entity_type: EntityType | None = None,
        *,
        state: ItemState | None = None,
        limit: int = 1000,
    ) -> list[SyncQueueItem]:
        """Queue items ordered by seq ASC, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(EntityType(entity_type).value)
        if state is not None:
            clauses.append("state = ?")
            params.append(ItemState(state).value)
        sql = "SELECT * FROM sync_queue"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq ASC LIMIT ?"
        params.append(min(limit, 10000))

        async with self._guard("load_queue_items"):
            conn = self._ensure_conn()
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_item(dict(r)) for r in rows]

    async def delete_pending_items(
        self,
        entity_type: EntityType,
        record_id: str,
        *,
        older_than: datetime | None = None,
    ) -> int:
        """Drop pending items for one record. Returns count removed."""
        sql = "DELETE FROM sync_queue WHERE entity_type = ? AND record_id = ? AND state = ?"
        params: list[Any] = [EntityType(entity_type).value, record_id, ItemState.PENDING.value]
        if older_than is not None:
            sql += " AND json_extract(payload, '$.updated_at') < ?"
            params.append(to_local_text(older_than))
        async with self._guard("delete_pending_items"):
            conn = self._ensure_conn()
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount

    async def reset_in_flight_items(self) -> int:
        """Return items left in flight by an interrupted process to pending."""
        async with self._guard("reset_in_flight_items"):
            conn = self._ensure_conn()
            cursor = await conn.execute(
                "UPDATE sync_queue SET state = ? WHERE state = ?",
                (ItemState.PENDING.value, ItemState.IN_FLIGHT.value),
            )
            await conn.commit()
            return cursor.rowcount

    async def record_sync_failure(self, item: SyncQueueItem, error: str) -> None:
        """Move an item to the failure log and out of the queue."""
        async with self._guard("record_sync_failure"):
            conn = self._ensure_conn()
            await conn.execute(
                """INSERT INTO sync_failures
                   (item_id, entity_type, record_id, operation, retry_count, error, failed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    item.id,
                    item.entity_type.value,
                    item.record_id,
                    item.operation.value,
                    item.retry_count,
                    error,
                    to_local_text(utcnow()),
                ),
            )
            await conn.execute("DELETE FROM sync_queue WHERE item_id = ?", (item.id,))
            await conn.commit()

    async def list_sync_failures(self, limit: int = 100) -> list[SyncFailure]:
        async with self._guard("list_sync_failures"):
            conn = self._ensure_conn()
            async with conn.execute(
                "SELECT * FROM sync_failures ORDER BY id DESC LIMIT ?", (min(limit, 10000),)
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            SyncFailure(
                item_id=r["item_id"],
                entity_type=EntityType(r["entity_type"]),
                record_id=r["record_id"],
                operation=Operation(r["operation"]),
                retry_count=r["retry_count"],
                error=r["error"],
                failed_at=parse_timestamp(r["failed_at"]),
            )
            for r in rows
        ]

    async def clear_sync_failures(self) -> int:
        async with self._guard("clear_sync_failures"):
            conn = self._ensure_conn()
            cursor = await conn.execute("DELETE FROM sync_failures")
            await conn.commit()
            return cursor.rowcount

    async def queue_counts(self) -> dict[str, int]:
        """Counts of pending, in-flight and abandoned items."""
        counts = {ItemState.PENDING.value: 0, ItemState.IN_FLIGHT.value: 0, "abandoned": 0}
        async with self._guard("queue_counts"):
            conn = self._ensure_conn()
            async with conn.execute(
                "SELECT state, COUNT(*) AS cnt FROM sync_queue GROUP BY state"
            ) as cursor:
                async for row in cursor:
                    counts[row["state"]] = row["cnt"]
            async with conn.execute("SELECT COUNT(*) AS cnt FROM sync_failures") as cursor:
                row = await cursor.fetchone()
                counts["abandoned"] = row["cnt"] if row else 0
        return counts


def _row_to_item(row: dict[str, Any]) -> SyncQueueItem:
    enqueued_at = parse_timestamp(row["enqueued_at"])
    next_attempt = row.get("next_attempt_at")
    return SyncQueueItem(
        id=row["item_id"],
        entity_type=EntityType(row["entity_type"]),
        record_id=row["record_id"],
        operation=Operation(row["operation"]),
        payload=json.loads(row["payload"]) if row["payload"] else {},
        state=ItemState(row["state"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        enqueued_at=enqueued_at,
        next_attempt_at=parse_timestamp(next_attempt) if next_attempt else enqueued_at,
        last_error=row.get("last_error"),
        seq=row["seq"],
    )
