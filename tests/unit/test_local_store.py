"""Tests for the SQLite local store."""

from __future__ import annotations

import pathlib
import sqlite3
from dataclasses import replace
from datetime import timedelta

import aiosqlite
import pytest

from tests.conftest import make_application
from tracksync.core.entities import ENTITY_SPECS, EntityType, FieldKind
from tracksync.core.record import Record
from tracksync.errors import StorageError
from tracksync.storage.sqlite_schema import SCHEMA_VERSION
from tracksync.storage.sqlite_store import SQLiteLocalStore, classify_sqlite_error
from tracksync.utils.timeutils import utcnow

# ── Record CRUD ───────────────────────────────────────────────────────────────


class TestPutAndGet:
    """put() stamps timestamps and get() returns what was written."""

    async def test_put_then_get_roundtrip(self, store: SQLiteLocalStore) -> None:
        record = make_application(notes="first round", attachments=[{"name": "cv.pdf"}])
        stored = await store.put(record)

        fetched = await store.get(EntityType.APPLICATIONS, record.id)
        assert fetched is not None
        assert fetched.fields == record.fields
        assert fetched.created_at == record.created_at
        assert fetched.updated_at >= record.updated_at
        assert fetched == stored

    @pytest.mark.parametrize("entity_type", list(EntityType))
    async def test_every_type_roundtrips(self, store: SQLiteLocalStore, entity_type: EntityType) -> None:
        samples = {
            FieldKind.TEXT: "value",
            FieldKind.INTEGER: 7,
            FieldKind.REAL: 2.5,
            FieldKind.BOOLEAN: False,
            FieldKind.JSON: {"list": [1, 2], "flag": True},
        }
        spec = ENTITY_SPECS[entity_type]
        record = Record.create(entity_type, {f.name: samples[f.kind] for f in spec.fields})

        stored = await store.put(record)

        assert await store.get(entity_type, record.id) == stored
        assert stored.fields == record.fields

    async def test_get_missing_returns_none(self, store: SQLiteLocalStore) -> None:
        assert await store.get(EntityType.APPLICATIONS, "nope") is None

    async def test_created_at_never_overwritten(self, store: SQLiteLocalStore) -> None:
        record = make_application()
        first = await store.put(record)

        later = replace(record.with_fields({"status": "Interview"}), created_at=utcnow() + timedelta(days=1))
        second = await store.put(later)

        assert second.created_at == first.created_at
        fetched = await store.get(EntityType.APPLICATIONS, record.id)
        assert fetched is not None
        assert fetched.created_at == first.created_at
        assert fetched.get("status") == "Interview"

    async def test_updated_at_strictly_increases(self, store: SQLiteLocalStore) -> None:
        record = make_application()
        first = await store.put(record)
        # Same input timestamp twice still advances updated_at
        second = await store.put(record.with_fields({"notes": "again"}))
        assert second.updated_at > first.updated_at

    async def test_put_keeps_future_updated_at(self, store: SQLiteLocalStore) -> None:
        future = utcnow() + timedelta(hours=1)
        record = replace(make_application(), updated_at=future)
        stored = await store.put(record)
        assert stored.updated_at == future

    async def test_durable_across_reopen(self, db_path: pathlib.Path) -> None:
        first = SQLiteLocalStore(db_path)
        await first.initialize()
        record = await first.put(make_application("Durable Inc"))
        await first.close()

        second = SQLiteLocalStore(db_path)
        await second.initialize()
        try:
            fetched = await second.get(EntityType.APPLICATIONS, record.id)
            assert fetched == record
        finally:
            await second.close()

    async def test_json_and_boolean_fields(self, store: SQLiteLocalStore) -> None:
        settings = Record.create(
            EntityType.PRIVACY_SETTINGS,
            {"analytics": True, "feedback": False, "consent_version": "2"},
        )
        await store.put(settings)
        fetched = await store.get(EntityType.PRIVACY_SETTINGS, settings.id)
        assert fetched is not None
        assert fetched.get("analytics") is True
        assert fetched.fields["feedback"] is False

    async def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown fields"):
            Record.create(EntityType.GOALS, {"yearly_goal": 10})


class TestList:
    """list() ordering, tombstone filtering and limits."""

    async def test_default_order_is_newest_date_first(self, store: SQLiteLocalStore) -> None:
        await store.put(make_application("Old", date_applied="2026-01-01"))
        await store.put(make_application("New", date_applied="2026-03-01"))
        await store.put(make_application("Mid", date_applied="2026-02-01"))

        records = await store.list(EntityType.APPLICATIONS)
        assert [r.get("company") for r in records] == ["New", "Mid", "Old"]

    async def test_ascending_order(self, store: SQLiteLocalStore) -> None:
        await store.put(make_application("B"))
        await store.put(make_application("A"))
        records = await store.list(EntityType.APPLICATIONS, "company", descending=False)
        assert [r.get("company") for r in records] == ["A", "B"]

    async def test_unorderable_field_rejected(self, store: SQLiteLocalStore) -> None:
        with pytest.raises(ValueError, match="Cannot order"):
            await store.list(EntityType.APPLICATIONS, "notes")

    async def test_limit(self, store: SQLiteLocalStore) -> None:
        for name in ("A", "B", "C"):
            await store.put(make_application(name))
        assert len(await store.list(EntityType.APPLICATIONS, limit=2)) == 2

    async def test_tombstones_hidden_by_default(self, store: SQLiteLocalStore) -> None:
        keep = await store.put(make_application("Keep"))
        gone = await store.put(make_application("Gone"))
        await store.delete(EntityType.APPLICATIONS, gone.id)

        live = await store.list(EntityType.APPLICATIONS)
        assert [r.id for r in live] == [keep.id]
        everything = await store.list(EntityType.APPLICATIONS, include_deleted=True)
        assert {r.id for r in everything} == {keep.id, gone.id}


class TestDeleteAndPurge:
    """Soft deletes, purge and clear."""

    async def test_delete_creates_tombstone(self, store: SQLiteLocalStore) -> None:
        stored = await store.put(make_application())
        tombstone = await store.delete(EntityType.APPLICATIONS, stored.id)

        assert tombstone is not None
        assert tombstone.deleted is True
        assert tombstone.updated_at > stored.updated_at
        assert await store.get(EntityType.APPLICATIONS, stored.id) is None
        hidden = await store.get(EntityType.APPLICATIONS, stored.id, include_deleted=True)
        assert hidden is not None and hidden.deleted

    async def test_delete_missing_returns_none(self, store: SQLiteLocalStore) -> None:
        assert await store.delete(EntityType.APPLICATIONS, "missing") is None

    async def test_purge_only_removes_tombstones(self, store: SQLiteLocalStore) -> None:
        live = await store.put(make_application())
        assert await store.purge(EntityType.APPLICATIONS, live.id) is False

        await store.delete(EntityType.APPLICATIONS, live.id)
        assert await store.purge(EntityType.APPLICATIONS, live.id) is True
        assert await store.get(EntityType.APPLICATIONS, live.id, include_deleted=True) is None

    async def test_clear_selected_types(self, store: SQLiteLocalStore) -> None:
        await store.put(make_application())
        goals = await store.put(
            Record.create(EntityType.GOALS, {"total_goal": 100, "weekly_goal": 5, "monthly_goal": 20})
        )
        await store.clear([EntityType.APPLICATIONS])

        assert await store.list(EntityType.APPLICATIONS) == []
        assert await store.get(EntityType.GOALS, goals.id) is not None

    async def test_bulk_put_preserves_timestamps(self, store: SQLiteLocalStore) -> None:
        past = utcnow() - timedelta(days=3)
        records = [
            replace(make_application(name), created_at=past, updated_at=past) for name in ("A", "B")
        ]
        assert await store.bulk_put(records) == 2
        for record in records:
            fetched = await store.get(EntityType.APPLICATIONS, record.id)
            assert fetched is not None
            assert fetched.updated_at == past

    async def test_apply_remote_only_writes_newer_versions(self, store: SQLiteLocalStore) -> None:
        current = await store.put(make_application(status="Offer"))
        stale = replace(
            current.with_fields({"status": "Applied"}),
            updated_at=current.updated_at - timedelta(seconds=1),
        )
        fresh = make_application("New Co")

        applied = await store.apply_remote([stale, fresh])

        assert [r.id for r in applied] == [fresh.id]
        kept = await store.get(EntityType.APPLICATIONS, current.id)
        assert kept is not None and kept.get("status") == "Offer"
        assert await store.get(EntityType.APPLICATIONS, fresh.id) is not None

    async def test_apply_remote_equal_version_is_skipped(self, store: SQLiteLocalStore) -> None:
        current = await store.put(make_application())
        same_time = replace(current.with_fields({"notes": "remote"}), updated_at=current.updated_at)

        assert await store.apply_remote([same_time]) == []

    async def test_prune_older_than(self, store: SQLiteLocalStore) -> None:
        old = Record.create(EntityType.ANALYTICS_EVENTS, {"event": "page_view"})
        old = replace(old, created_at=utcnow() - timedelta(days=60))
        fresh = Record.create(EntityType.ANALYTICS_EVENTS, {"event": "page_view"})
        await store.bulk_put([old, fresh])

        pruned = await store.prune_older_than(
            EntityType.ANALYTICS_EVENTS, utcnow() - timedelta(days=30)
        )
        assert pruned == 1
        remaining = await store.list(EntityType.ANALYTICS_EVENTS)
        assert [r.id for r in remaining] == [fresh.id]


# ── Change notifications ─────────────────────────────────────────────────────


class TestSubscribe:
    """Listeners see every write before it returns."""

    async def test_put_notifies(self, store: SQLiteLocalStore) -> None:
        seen: list[tuple[EntityType, tuple[str, ...]]] = []
        store.subscribe(lambda entity_type, ids: seen.append((entity_type, ids)))

        record = await store.put(make_application())
        assert seen == [(EntityType.APPLICATIONS, (record.id,))]

    async def test_delete_and_bulk_notify(self, store: SQLiteLocalStore) -> None:
        seen: list[EntityType] = []
        store.subscribe(lambda entity_type, ids: seen.append(entity_type))

        record = await store.put(make_application())
        await store.delete(EntityType.APPLICATIONS, record.id)
        await store.bulk_put([make_application()])
        assert seen == [EntityType.APPLICATIONS] * 3

    async def test_unsubscribe(self, store: SQLiteLocalStore) -> None:
        seen: list[EntityType] = []
        unsubscribe = store.subscribe(lambda entity_type, ids: seen.append(entity_type))
        unsubscribe()
        await store.put(make_application())
        assert seen == []

    async def test_failing_listener_does_not_block_write(self, store: SQLiteLocalStore) -> None:
        def broken(entity_type: EntityType, ids: tuple[str, ...]) -> None:
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        record = await store.put(make_application())
        assert await store.get(EntityType.APPLICATIONS, record.id) is not None


# ── Schema, health and errors ────────────────────────────────────────────────


class TestSchemaAndHealth:
    """Schema versioning, quota reporting and error translation."""

    async def test_schema_version_stamped(self, store: SQLiteLocalStore, db_path: pathlib.Path) -> None:
        async with aiosqlite.connect(db_path) as conn:
            async with conn.execute("SELECT version FROM schema_version") as cursor:
                row = await cursor.fetchone()
        assert row is not None and row[0] == SCHEMA_VERSION

    async def test_initialize_is_idempotent(self, store: SQLiteLocalStore) -> None:
        await store.initialize()
        assert await store.list(EntityType.GOALS) == []

    async def test_health_reports_usage(self, store: SQLiteLocalStore) -> None:
        health = await store.health()
        assert health.is_healthy
        assert health.used_bytes > 0
        assert health.available_bytes == health.quota_bytes - health.used_bytes
        assert health.total_errors == 0
        assert health.last_error is None

    async def test_quota_exceeded_raises_storage_error(self, tmp_path: pathlib.Path) -> None:
        small = SQLiteLocalStore(tmp_path / "small.db", quota_bytes=512 * 1024)
        await small.initialize()
        try:
            with pytest.raises(StorageError) as exc_info:
                for _ in range(20):
                    await small.put(make_application(notes="x" * 100_000))
            assert exc_info.value.code == "quota_exceeded"

            health = await small.health()
            assert health.total_errors == 1
            assert health.recent_errors == 1
            assert health.last_error_code == "quota_exceeded"
            assert not health.is_healthy
        finally:
            await small.close()

    async def test_uninitialized_store_raises(self, tmp_path: pathlib.Path) -> None:
        closed = SQLiteLocalStore(tmp_path / "never.db")
        with pytest.raises(StorageError, match="not initialized"):
            await closed.get(EntityType.APPLICATIONS, "x")

    def test_classify_sqlite_errors(self) -> None:
        assert classify_sqlite_error(sqlite3.OperationalError("database or disk is full")) == "quota_exceeded"
        assert classify_sqlite_error(sqlite3.DatabaseError("database disk image is malformed")) == "corruption"
        assert classify_sqlite_error(sqlite3.DatabaseError("file is not a database")) == "corruption"
        assert classify_sqlite_error(sqlite3.OperationalError("database is locked")) == "unavailable"


class TestMigrations:
    """Older databases are upgraded in place."""

    async def test_v1_queue_gains_retry_columns(self, db_path: pathlib.Path) -> None:
        async with aiosqlite.connect(db_path) as conn:
            await conn.executescript(
                """
                CREATE TABLE schema_version (version INTEGER PRIMARY KEY);
                INSERT INTO schema_version (version) VALUES (1);
                CREATE TABLE sync_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL UNIQUE,
                    entity_type TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    state TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    enqueued_at TEXT NOT NULL
                );
                INSERT INTO sync_queue (item_id, entity_type, record_id, operation, enqueued_at)
                VALUES ('item-1', 'goals', 'g1', 'update', '2026-01-01T00:00:00.000000');
                """
            )
            await conn.commit()

        upgraded = SQLiteLocalStore(db_path)
        await upgraded.initialize()
        try:
            [item] = await upgraded.load_queue_items()
            assert item.id == "item-1"
            assert item.next_attempt_at == item.enqueued_at
            assert item.last_error is None

            async with aiosqlite.connect(db_path) as conn:
                async with conn.execute("SELECT version FROM schema_version") as cursor:
                    row = await cursor.fetchone()
            assert row is not None and row[0] == SCHEMA_VERSION
        finally:
            await upgraded.close()
