"""End-to-end tests for SyncService over the in-memory backend."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import replace
from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio

from tests.conftest import SESSION_ID, make_application
from tracksync.config import Config
from tracksync.core.entities import EntityType
from tracksync.core.record import Operation, Record
from tracksync.remote.mappers import get_mapper
from tracksync.remote.memory_backend import InMemoryBackend
from tracksync.sync.auth import AuthStateManager
from tracksync.sync.connectivity import ConnectivityMonitor
from tracksync.sync.conflict import ReconcileReport
from tracksync.sync.service import MAX_BACKUPS, SyncService
from tracksync.utils.timeutils import utcnow


@pytest_asyncio.fixture
async def service(
    config: Config,
    backend: InMemoryBackend,
    auth: AuthStateManager,
    connectivity: ConnectivityMonitor,
) -> AsyncGenerator[SyncService, None]:
    """Started service signed in as SESSION_ID."""
    svc = SyncService(config, backend=backend, auth=auth, connectivity=connectivity)
    await svc.start()
    yield svc
    await svc.close()


async def _seed_remote(backend: InMemoryBackend, record: Record, account_key: int = 1) -> None:
    row = get_mapper(record.entity_type).to_row(record, account_key=account_key)
    await backend.upsert(record.entity_type.value, [row])


# ── Scenarios ─────────────────────────────────────────────────────────────────


class TestScenarios:
    """Offline create, stale pulls and the identity cache lifecycle."""

    async def test_create_offline_then_sync(
        self, service: SyncService, backend: InMemoryBackend
    ) -> None:
        service.set_online(False)
        await service.put(make_application(record_id="a1"))

        listed = await service.list(EntityType.APPLICATIONS)
        assert [r.id for r in listed] == ["a1"]
        assert backend.count_calls(table="applications") == 0

        service.set_online(True)
        await service.wait_for_background()

        assert backend.count_calls("upsert", "applications") == 1
        assert [row["id"] for row in backend.rows("applications")] == ["a1"]
        assert await service.queue.pending() == []

    async def test_stale_remote_pull_ignored(
        self, service: SyncService, backend: InMemoryBackend
    ) -> None:
        local = await service.put(make_application(status="Applied", record_id="b1"))
        stale = replace(
            local.with_fields({"status": "Rejected"}),
            updated_at=local.updated_at - timedelta(hours=3),
        )
        await _seed_remote(backend, stale)

        report = await service.pull(EntityType.APPLICATIONS)

        assert report.applied == 0
        assert report.kept_local == 1
        current = await service.get(EntityType.APPLICATIONS, "b1")
        assert current is not None
        assert current.get("status") == "Applied"

    async def test_identity_survives_reload_but_not_sign_out(
        self,
        config: Config,
        backend: InMemoryBackend,
        auth: AuthStateManager,
        connectivity: ConnectivityMonitor,
    ) -> None:
        await backend.insert("users", {"id": 42, "external_id": SESSION_ID})

        async with SyncService(config, backend=backend, auth=auth, connectivity=connectivity) as first:
            assert await first.client.current_account_key() == 42

        calls = len(backend.calls)
        async with SyncService(config, backend=backend, auth=auth, connectivity=connectivity) as reloaded:
            assert await reloaded.client.current_account_key() == 42
            assert len(backend.calls) == calls

            await reloaded.sign_out()
            assert await reloaded.store.load_identity() is None

            await reloaded.sign_in(SESSION_ID)
            assert await reloaded.client.current_account_key() == 42
            assert backend.count_calls("select", "users") == 2
            await reloaded.wait_for_background()


# ── Records ───────────────────────────────────────────────────────────────────


class TestRecords:
    """Local-first writes queue remote mutations."""

    async def test_save_creates_then_updates(self, service: SyncService) -> None:
        created = await service.save(EntityType.APPLICATIONS, {"company": "Acme", "status": "Applied"})
        updated = await service.save(
            EntityType.APPLICATIONS, {"status": "Interview"}, record_id=created.id
        )

        assert updated.id == created.id
        assert updated.get("company") == "Acme"
        assert updated.get("status") == "Interview"
        [item] = await service.queue.pending()
        assert item.operation == Operation.CREATE
        assert item.record.get("status") == "Interview"

    async def test_save_rejects_unknown_fields(self, service: SyncService) -> None:
        with pytest.raises(ValueError):
            await service.save(EntityType.GOALS, {"yearly_goal": 3})

    async def test_delete(self, service: SyncService, backend: InMemoryBackend) -> None:
        record = await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        await service.force_refresh()
        assert len(backend.rows("applications")) == 1

        assert await service.delete(EntityType.APPLICATIONS, record.id) is True
        assert await service.get(EntityType.APPLICATIONS, record.id) is None
        await service.force_refresh()
        assert backend.rows("applications") == []

    async def test_delete_missing(self, service: SyncService) -> None:
        assert await service.delete(EntityType.APPLICATIONS, "missing") is False

    async def test_backups_are_never_queued(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        await service.create_backup()
        assert all(i.entity_type != EntityType.BACKUPS for i in await service.queue.pending())


class TestCaching:
    """Cached reads are invalidated by writes and pulls."""

    async def test_list_is_cached_until_write(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "A"})
        await service.list(EntityType.APPLICATIONS, refresh=False)
        await service.list(EntityType.APPLICATIONS, refresh=False)
        assert service.cache_status().hits == 1

        await service.save(EntityType.APPLICATIONS, {"company": "B"})
        listed = await service.list(EntityType.APPLICATIONS, refresh=False)
        assert {r.get("company") for r in listed} == {"A", "B"}

    async def test_background_pull_refreshes_list(
        self, service: SyncService, backend: InMemoryBackend
    ) -> None:
        assert await service.client.current_account_key() == 1
        await _seed_remote(backend, make_application("Remote Co"))

        assert await service.list(EntityType.APPLICATIONS) == []
        await service.wait_for_background()

        listed = await service.list(EntityType.APPLICATIONS, refresh=False)
        assert [r.get("company") for r in listed] == ["Remote Co"]

    async def test_failed_background_pull_is_logged_not_raised(
        self,
        service: SyncService,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        assert await service.client.current_account_key() == 1

        async def broken_pull(entity_type: EntityType, **kwargs: Any) -> ReconcileReport:
            raise RuntimeError("mapper exploded")

        monkeypatch.setattr(service, "pull", broken_pull)
        await service.list(EntityType.APPLICATIONS)

        with caplog.at_level(logging.ERROR, logger="tracksync.sync.service"):
            await service.wait_for_background()

        assert "Background pull of applications failed" in caplog.text
        # Finished tasks are not reported twice
        caplog.clear()
        await service.wait_for_background()
        assert "Background pull" not in caplog.text

    async def test_sign_out_clears_cache_but_keeps_data(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        await service.list(EntityType.APPLICATIONS, refresh=False)

        await service.sign_out()

        assert service.cache_status().size == 0
        assert len(await service.list(EntityType.APPLICATIONS, refresh=False)) == 1
        assert len(await service.queue.pending()) == 1


# ── Refresh ───────────────────────────────────────────────────────────────────


class TestForceRefresh:
    """Push-then-pull across every syncable type."""

    async def test_pushes_and_pulls(self, service: SyncService, backend: InMemoryBackend) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Local"})
        await _seed_remote(backend, Record.create(EntityType.GOALS, {"total_goal": 100}))

        report = await service.force_refresh()

        assert report.remote_available
        assert report.pushed == 1
        assert report.pulls[EntityType.GOALS].applied == 1
        assert len(await service.list(EntityType.GOALS, refresh=False)) == 1
        assert report.to_dict()["pushed"] == 1

    async def test_sync_is_idempotent(self, service: SyncService, backend: InMemoryBackend) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        await service.force_refresh()
        rows_after_first = backend.rows("applications")

        second = await service.force_refresh()

        assert second.pushed == 0
        assert second.applied == 0
        assert backend.rows("applications") == rows_after_first
        assert len(await service.list(EntityType.APPLICATIONS, refresh=False)) == 1

    async def test_offline_refresh_is_safe(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        service.set_online(False)

        report = await service.force_refresh()

        assert not report.remote_available
        assert report.pushed == 0
        assert len(await service.queue.pending()) == 1
        assert len(await service.list(EntityType.APPLICATIONS, refresh=False)) == 1

    async def test_local_only_service(self, config: Config) -> None:
        async with SyncService(config) as local:
            assert not local.remote_enabled
            await local.save(EntityType.GOALS, {"total_goal": 10})
            report = await local.force_refresh()
            assert not report.remote_available
            assert len(await local.list(EntityType.GOALS)) == 1


# ── Backups and maintenance ───────────────────────────────────────────────────


class TestBackups:
    """Local snapshots of applications and goals."""

    async def test_restore_replaces_current_data(self, service: SyncService) -> None:
        kept = await service.save(EntityType.APPLICATIONS, {"company": "Kept"})
        edited = await service.save(EntityType.APPLICATIONS, {"company": "Original"})
        backup = await service.create_backup()

        await service.save(EntityType.APPLICATIONS, {"company": "Changed"}, record_id=edited.id)
        extra = await service.save(EntityType.APPLICATIONS, {"company": "Added later"})
        await service.delete(EntityType.APPLICATIONS, kept.id)

        assert await service.restore_backup(backup.id) == 2

        companies = {r.get("company") for r in await service.list(EntityType.APPLICATIONS, refresh=False)}
        assert companies == {"Kept", "Original"}
        assert await service.get(EntityType.APPLICATIONS, extra.id) is None

    async def test_restore_missing_backup(self, service: SyncService) -> None:
        with pytest.raises(ValueError, match="Backup not found"):
            await service.restore_backup("nope")

    async def test_cleanup_keeps_newest_backups(self, service: SyncService) -> None:
        for _ in range(MAX_BACKUPS + 2):
            await service.create_backup()

        removed = await service.cleanup_old_data()

        assert removed["backups"] == 2
        assert len(await service.list_backups()) == MAX_BACKUPS

    async def test_cleanup_prunes_old_analytics(self, service: SyncService) -> None:
        old = Record.create(EntityType.ANALYTICS_EVENTS, {"event": "page_view"})
        old = replace(old, created_at=utcnow() - timedelta(days=45))
        fresh = Record.create(EntityType.ANALYTICS_EVENTS, {"event": "page_view"})
        await service.store.bulk_put([old, fresh])

        removed = await service.cleanup_old_data()

        assert removed["analytics_events"] == 1
        remaining = await service.list(EntityType.ANALYTICS_EVENTS, refresh=False)
        assert [r.id for r in remaining] == [fresh.id]


class TestOperationalSurface:
    """Health, queue and admin reporting."""

    async def test_storage_health(self, service: SyncService) -> None:
        health = await service.storage_health()
        assert health.is_healthy
        assert health.quota_bytes == service.config.storage_quota_bytes

    async def test_queue_status(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme"})
        status = await service.queue_status()
        assert status.pending == 1
        assert status.running

    async def test_admin_report(self, service: SyncService) -> None:
        await service.save(EntityType.APPLICATIONS, {"company": "Acme", "status": "Applied"})
        await service.force_refresh()

        report = await service.admin_report()
        assert report.source == "remote"
        assert report.total_applications == 1
        assert report.status_distribution == {"Applied": 1}
