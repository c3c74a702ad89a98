"""SQLite record operations mixin for the entity collections."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from tracksync.core.entities import ENTITY_SPECS, EntitySpec, EntityType, FieldKind, get_spec
from tracksync.core.record import Record
from tracksync.storage.sqlite_schema import quote
from tracksync.utils.timeutils import parse_timestamp, to_local_text, utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


class SQLiteRecordMixin:
    """Mixin providing record CRUD over the per-entity tables."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteLocalStore at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _guard(self, operation: str) -> AbstractAsyncContextManager[None]:
        raise NotImplementedError

    def _notify_changed(self, entity_type: EntityType, record_ids: Iterable[str]) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(
        self,
        entity_type: EntityType,
        record_id: str,
        *,
        include_deleted: bool = False,
    ) -> Record | None:
        spec = get_spec(entity_type)
        async with self._guard("get"):
            record = await self._fetch(self._ensure_conn(), spec, record_id)
        if record is None or (record.deleted and not include_deleted):
            return None
        return record

    async def list(
        self,
        entity_type: EntityType,
        order_by: str | None = None,
        *,
        descending: bool = True,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        spec = get_spec(entity_type)
        order_field = order_by or spec.default_order
        if order_field not in spec.orderable:
            raise ValueError(f"Cannot order {spec.table} by {order_field!r}")

        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {quote(spec.table)}"
        if not include_deleted:
            sql += " WHERE deleted = 0"
        sql += f" ORDER BY {quote(order_field)} {direction}, id {direction}"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (max(0, limit),)

        async with self._guard("list"):
            conn = self._ensure_conn()
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(spec, dict(row)) for row in rows]

    async def put(self, record: Record) -> Record:
        spec = get_spec(record.entity_type)
        async with self._guard("put"):
            conn = self._ensure_conn()
            previous = await self._fetch(conn, spec, record.id)
            updated_at = max(utcnow(), record.updated_at)
            created_at = record.created_at
            if previous is not None:
                created_at = previous.created_at
                updated_at = max(updated_at, previous.updated_at + _TICK)
            stored = replace(record, created_at=created_at, updated_at=updated_at)
            await self._upsert(conn, spec, stored)
            await conn.commit()
        self._notify_changed(spec.entity_type, (stored.id,))
        return stored

    async def delete(self, entity_type: EntityType, record_id: str) -> Record | None:
        spec = get_spec(entity_type)
        async with self._guard("delete"):
            conn = self._ensure_conn()
            previous = await self._fetch(conn, spec, record_id)
            if previous is None:
                return None
            tombstone = replace(
                previous,
                deleted=True,
                updated_at=max(utcnow(), previous.updated_at + _TICK),
            )
            await self._upsert(conn, spec, tombstone)
            await conn.commit()
        self._notify_changed(spec.entity_type, (record_id,))
        return tombstone

    async def bulk_put(self, records: Sequence[Record]) -> int:
        if not records:
            return 0
        touched: dict[EntityType, list[str]] = {}
        async with self._guard("bulk_put"):
            conn = self._ensure_conn()
            for record in records:
                await self._upsert(conn, get_spec(record.entity_type), record)
                touched.setdefault(record.entity_type, []).append(record.id)
            await conn.commit()
        for entity_type, ids in touched.items():
            self._notify_changed(entity_type, ids)
        return len(records)

    async def apply_remote(self, records: Sequence[Record]) -> list[Record]:
        """Write pulled records only where they are strictly newer than the
        stored version. Returns the records actually written."""
        if not records:
            return []
        applied: list[Record] = []
        async with self._guard("apply_remote"):
            conn = self._ensure_conn()
            for record in records:
                if await self._upsert(conn, get_spec(record.entity_type), record, only_if_newer=True):
                    applied.append(record)
            await conn.commit()
        touched: dict[EntityType, list[str]] = {}
        for record in applied:
            touched.setdefault(record.entity_type, []).append(record.id)
        for entity_type, ids in touched.items():
            self._notify_changed(entity_type, ids)
        return applied

    async def purge(self, entity_type: EntityType, record_id: str) -> bool:
        spec = get_spec(entity_type)
        async with self._guard("purge"):
            conn = self._ensure_conn()
            cursor = await conn.execute(
                f"DELETE FROM {quote(spec.table)} WHERE id = ? AND deleted = 1",
                (record_id,),
            )
            await conn.commit()
            removed = cursor.rowcount > 0
        if removed:
            self._notify_changed(spec.entity_type, (record_id,))
        return removed

    async def clear(self, entity_types: Iterable[EntityType] | None = None) -> None:
        types = [EntityType(t) for t in entity_types] if entity_types is not None else list(ENTITY_SPECS)
        async with self._guard("clear"):
            conn = self._ensure_conn()
            for entity_type in types:
                await conn.execute(f"DELETE FROM {quote(entity_type.value)}")
            await conn.commit()
        for entity_type in types:
            self._notify_changed(entity_type, ())

    async def prune_older_than(self, entity_type: EntityType, cutoff: datetime) -> int:
        spec = get_spec(entity_type)
        async with self._guard("prune"):
            conn = self._ensure_conn()
            cursor = await conn.execute(
                f"DELETE FROM {quote(spec.table)} WHERE created_at < ?",
                (to_local_text(cutoff),),
            )
            await conn.commit()
            pruned = cursor.rowcount
        if pruned:
            logger.debug("Pruned %d %s records older than %s", pruned, spec.table, cutoff)
            self._notify_changed(spec.entity_type, ())
        return pruned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch(
        self, conn: aiosqlite.Connection, spec: EntitySpec, record_id: str
    ) -> Record | None:
        async with conn.execute(
            f"SELECT * FROM {quote(spec.table)} WHERE id = ?", (record_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(spec, dict(row)) if row is not None else None

    async def _upsert(
        self,
        conn: aiosqlite.Connection,
        spec: EntitySpec,
        record: Record,
        *,
        only_if_newer: bool = False,
    ) -> bool:
        names = ["id", "created_at", "updated_at", "deleted", *spec.field_names]
        values = [
            record.id,
            to_local_text(record.created_at),
            to_local_text(record.updated_at),
            1 if record.deleted else 0,
            *(_encode(f.kind, record.fields.get(f.name)) for f in spec.fields),
        ]
        # created_at is only written on insert
        assignments = ", ".join(
            f"{quote(name)} = excluded.{quote(name)}" for name in names if name not in ("id", "created_at")
        )
        sql = (
            f"INSERT INTO {quote(spec.table)} ({', '.join(quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}"
        )
        if only_if_newer:
            # Fixed-width ISO text compares in time order
            sql += f" WHERE excluded.updated_at > {quote(spec.table)}.updated_at"
        cursor = await conn.execute(sql, values)
        return cursor.rowcount > 0


def _encode(kind: FieldKind, value: Any) -> Any:
    if value is None:
        return None
    if kind == FieldKind.JSON:
        return json.dumps(value)
    if kind == FieldKind.BOOLEAN:
        return 1 if value else 0
    return value


def _decode(kind: FieldKind, value: Any) -> Any:
    if value is None:
        return None
    if kind == FieldKind.JSON:
        return json.loads(value)
    if kind == FieldKind.BOOLEAN:
        return bool(value)
    return value


def _row_to_record(spec: EntitySpec, row: dict[str, Any]) -> Record:
    return Record(
        entity_type=spec.entity_type,
        id=row["id"],
        fields={f.name: _decode(f.kind, row.get(f.name)) for f in spec.fields},
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        deleted=bool(row["deleted"]),
    )
