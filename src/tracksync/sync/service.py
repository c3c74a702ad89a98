"""SyncService - wires the sync components together and owns their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from tracksync.admin.aggregator import AdminAggregator, AdminReport
from tracksync.config import Config
from tracksync.core.entities import SYNCABLE_TYPES, EntityType, get_spec
from tracksync.core.record import Operation, Record
from tracksync.errors import StorageError
from tracksync.remote.backend import HttpBackend, RemoteBackend
from tracksync.remote.sync_client import PullOptions, RemoteSyncClient
from tracksync.storage.base import LocalStore, StorageHealth
from tracksync.storage.result_cache import CacheStatus, ResultCache
from tracksync.storage.sqlite_store import SQLiteLocalStore
from tracksync.sync.auth import AuthState, AuthStateManager
from tracksync.sync.conflict import ConflictResolver, ReconcileReport
from tracksync.sync.connectivity import ConnectivityMonitor
from tracksync.sync.identity import IdentityResolver
from tracksync.sync.queue import DrainReport, QueueStatus, SyncQueue
from tracksync.utils.timeutils import to_local_text, utcnow

logger = logging.getLogger(__name__)

BACKUP_TYPES: tuple[EntityType, ...] = (EntityType.APPLICATIONS, EntityType.GOALS)
BACKUP_FORMAT_VERSION = 1
MAX_BACKUPS = 10
PRUNABLE_TYPES: tuple[EntityType, ...] = (EntityType.ANALYTICS_EVENTS, EntityType.USER_SESSIONS)


@dataclass(frozen=True)
class RefreshReport:
    """Outcome of a forced refresh."""

    remote_available: bool
    drains: list[DrainReport] = field(default_factory=list)
    pulls: dict[EntityType, ReconcileReport] = field(default_factory=dict)

    @property
    def pushed(self) -> int:
        return sum(d.confirmed for d in self.drains)

    @property
    def applied(self) -> int:
        return sum(r.applied for r in self.pulls.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_available": self.remote_available,
            "pushed": self.pushed,
            "applied": self.applied,
            "drains": [
                {
                    "entity_type": d.entity_type.value,
                    "attempted": d.attempted,
                    "confirmed": d.confirmed,
                    "retried": d.retried,
                    "abandoned": d.abandoned,
                    "skipped": d.skipped,
                }
                for d in self.drains
            ],
            "pulls": {
                t.value: {"applied": r.applied, "requeued": r.requeued, "unchanged": r.unchanged}
                for t, r in self.pulls.items()
            },
        }


class SyncService:
    """
    Local-first data access with background synchronization.

    Writes go to the local store and are mirrored through the sync queue.
    Reads are served from the result cache or the local store, and schedule
    a background pull whose results are reconciled into the store.

    Usage:
        async with SyncService(Config.from_env()) as service:
            await service.sign_in(session_id)
            record = await service.save("applications", {"company": "Acme"})
    """

    def __init__(
        self,
        config: Config,
        *,
        store: LocalStore | None = None,
        backend: RemoteBackend | None = None,
        auth: AuthStateManager | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        if backend is None and config.remote_enabled:
            assert config.remote_url is not None and config.remote_key is not None
            backend = HttpBackend(config.remote_url, config.remote_key, timeout=config.pull_timeout)
        elif backend is None:
            logger.warning(
                "Remote sync not configured (TRACKSYNC_REMOTE_URL/TRACKSYNC_REMOTE_KEY); "
                "running local-only"
            )

        self._config = config
        self._backend = backend
        self.store = store or SQLiteLocalStore(config.db_path, quota_bytes=config.storage_quota_bytes)
        self.auth = auth or AuthStateManager()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.cache = ResultCache(ttl_seconds=config.cache_ttl, max_entries=config.cache_max_entries)
        self.identity = IdentityResolver(
            self.store, backend, self.connectivity, timeout=config.push_timeout
        )
        self.client = RemoteSyncClient(
            backend,
            self.identity,
            self.auth,
            self.connectivity,
            push_timeout=config.push_timeout,
            pull_timeout=config.pull_timeout,
            max_retries=config.max_request_retries,
            retry_base_delay=config.retry_base_delay,
            page_size=config.page_size,
            max_page_size=config.max_page_size,
        )
        self.queue = SyncQueue(
            self.store,
            self.client,
            max_retries=config.queue_max_retries,
            retry_delay=config.queue_retry_delay,
            drain_interval=config.drain_interval,
            min_drain_interval=config.min_drain_interval,
        )
        self.resolver = ConflictResolver(self.store, self.queue)
        self.aggregator = AdminAggregator(
            self.client,
            self.store,
            page_size=config.admin_page_size,
            max_rows=config.admin_max_rows,
        )
        self._pull_tasks: dict[EntityType, asyncio.Task[None]] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def remote_enabled(self) -> bool:
        return self._backend is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the store, wire subscriptions and start background draining."""
        if self._started:
            return
        await self.store.initialize()
        self._unsubscribers = [
            self.store.subscribe(self._on_store_changed),
            self.identity.subscribe(self._on_identity_invalidated),
            self.auth.subscribe(self._on_auth_changed),
            self.connectivity.subscribe(self._on_connectivity_changed),
        ]
        await self.queue.recover()
        self.queue.start()
        self._started = True

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.queue.stop()
        for task in self._pull_tasks.values():
            if not task.done():
                task.cancel()
        if self._pull_tasks:
            await asyncio.gather(*self._pull_tasks.values(), return_exceptions=True)
        self._pull_tasks.clear()
        if self._backend is not None:
            await self._backend.close()
        await self.store.close()
        self._started = False

    async def __aenter__(self) -> SyncService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Session and connectivity
    # ------------------------------------------------------------------

    async def sign_in(self, session_id: str, access_token: str | None = None) -> None:
        previous = self.auth.current.session_id
        self.auth.sign_in(session_id, access_token)
        if previous != session_id:
            await self.identity.invalidate("session changed")
        if self.client.available:
            self.queue.request_drain()

    async def sign_out(self) -> None:
        """Forget the session. Local data and queued mutations are kept."""
        self.auth.sign_out()
        await self.identity.invalidate("signed out")

    def set_online(self, online: bool) -> None:
        self.connectivity.set_online(online)

    def _on_store_changed(self, entity_type: EntityType, record_ids: tuple[str, ...]) -> None:
        self.cache.invalidate_type(entity_type)

    def _on_identity_invalidated(self, reason: str) -> None:
        self.cache.clear()

    def _on_auth_changed(self, state: AuthState) -> None:
        if self._backend is not None:
            self._backend.set_access_token(state.access_token)

    def _on_connectivity_changed(self, online: bool) -> None:
        if online and self._started:
            logger.debug("Back online, draining sync queue")
            self.queue.request_drain()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def save(
        self,
        entity_type: EntityType | str,
        fields: dict[str, Any],
        record_id: str | None = None,
    ) -> Record:
        """Create a record, or update the fields of an existing one.

        Raises:
            StorageError: If the local write fails.
            ValueError: On unknown fields or values of the wrong kind.
        """
        entity_type = EntityType(entity_type)
        existing = await self.store.get(entity_type, record_id) if record_id else None
        if existing is not None:
            return await self._write(existing.with_fields(fields), Operation.UPDATE)
        return await self._write(Record.create(entity_type, fields, record_id), Operation.CREATE)

    async def put(self, record: Record) -> Record:
        """Write a whole record (create or replace)."""
        existing = await self.store.get(record.entity_type, record.id, include_deleted=True)
        operation = Operation.CREATE if existing is None else Operation.UPDATE
        return await self._write(record, operation)

    async def delete(self, entity_type: EntityType | str, record_id: str) -> bool:
        entity_type = EntityType(entity_type)
        tombstone = await self.store.delete(entity_type, record_id)
        if tombstone is None:
            return False
        await self.queue.enqueue(entity_type, Operation.DELETE, tombstone)
        return True

    async def get(self, entity_type: EntityType | str, record_id: str) -> Record | None:
        return await self.store.get(EntityType(entity_type), record_id)

    async def list(
        self,
        entity_type: EntityType | str,
        order_by: str | None = None,
        *,
        refresh: bool = True,
    ) -> list[Record]:
        """Cached list of live records; schedules a background pull."""
        entity_type = EntityType(entity_type)
        key = ResultCache.key_for(entity_type, f"list:{order_by or 'default'}")
        cached = self.cache.get(key)
        if cached is None:
            generation = self.cache.generation(entity_type)
            cached = await self.store.list(entity_type, order_by)
            self.cache.set(key, cached, generation=generation)
        if refresh:
            self._schedule_pull(entity_type)
        return list(cached)

    async def _write(self, record: Record, operation: Operation) -> Record:
        stored = await self.store.put(record)
        await self.queue.enqueue(stored.entity_type, operation, stored)
        return stored

    # ------------------------------------------------------------------
    # Pulls
    # ------------------------------------------------------------------

    async def pull(self, entity_type: EntityType | str, *, all_pages: bool = False) -> ReconcileReport:
        """Fetch the account's remote rows and reconcile them locally."""
        entity_type = EntityType(entity_type)
        report = ReconcileReport(entity_type)
        if not get_spec(entity_type).syncable:
            return report
        account_key = await self.client.current_account_key()
        if account_key is None:
            return report

        page_size = self._config.page_size
        offset = 0
        while True:
            result = await self.client.pull(
                entity_type, account_key, PullOptions(limit=page_size, offset=offset)
            )
            if not result.ok or not result.records:
                break
            report = report.merge(await self.resolver.reconcile(entity_type, result.records))
            if not all_pages or len(result.records) < page_size:
                break
            offset += len(result.records)
        return report

    def _schedule_pull(self, entity_type: EntityType) -> None:
        if not get_spec(entity_type).syncable or not self.client.available:
            return
        if self.auth.current.session_id is None:
            return
        task = self._pull_tasks.get(entity_type)
        if task is not None and not task.done():
            return
        self._pull_tasks[entity_type] = asyncio.create_task(
            self._background_pull(entity_type), name=f"tracksync-pull-{entity_type}"
        )

    async def _background_pull(self, entity_type: EntityType) -> None:
        try:
            await self.pull(entity_type)
        except StorageError as e:
            logger.error("Background pull of %s abandoned: %s", entity_type, e)

    async def wait_for_background(self) -> None:
        """Wait for scheduled pulls and queued drains to finish."""
        tasks = dict(self._pull_tasks)
        results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for (entity_type, task), outcome in zip(tasks.items(), results, strict=True):
            if self._pull_tasks.get(entity_type) is task:
                del self._pull_tasks[entity_type]
            if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                logger.error("Background pull of %s failed", entity_type, exc_info=outcome)
        await self.queue.wait_for_drain()

    # ------------------------------------------------------------------
    # Operational surface
    # ------------------------------------------------------------------

    async def force_refresh(self) -> RefreshReport:
        """Clear the cache, push everything due and pull every syncable type."""
        self.cache.clear()
        drains = await self.queue.drain(force=True)
        pulls: dict[EntityType, ReconcileReport] = {}
        for entity_type in SYNCABLE_TYPES:
            pulls[entity_type] = await self.pull(entity_type, all_pages=True)
        return RefreshReport(remote_available=self.client.available, drains=drains, pulls=pulls)

    def cache_status(self) -> CacheStatus:
        return self.cache.status()

    async def storage_health(self) -> StorageHealth:
        return await self.store.health()

    async def queue_status(self, failure_limit: int = 10) -> QueueStatus:
        """Queue counts, drain totals and the most recent abandoned items."""
        return await self.queue.status(failure_limit=failure_limit)

    async def clear_sync_failures(self) -> int:
        return await self.queue.clear_failures()

    async def admin_report(self) -> AdminReport:
        return await self.aggregator.build_report()

    # ------------------------------------------------------------------
    # Backups and maintenance
    # ------------------------------------------------------------------

    async def create_backup(self) -> Record:
        """Snapshot applications and goals into a local-only backup record."""
        data = {
            entity_type.value: [r.to_payload() for r in await self.store.list(entity_type)]
            for entity_type in BACKUP_TYPES
        }
        backup = Record.create(
            EntityType.BACKUPS,
            {"timestamp": to_local_text(utcnow()), "version": BACKUP_FORMAT_VERSION, "data": data},
        )
        stored = await self.store.put(backup)
        logger.info("Created backup %s", stored.id)
        return stored

    async def list_backups(self) -> list[Record]:
        return await self.store.list(EntityType.BACKUPS, "timestamp")

    async def restore_backup(self, backup_id: str) -> int:
        """Replace applications and goals with a backup's contents.

        Records missing from the backup are deleted; restored records are
        re-stamped and queued for sync. Returns the number restored.

        Raises:
            ValueError: If the backup does not exist.
        """
        backup = await self.store.get(EntityType.BACKUPS, backup_id)
        if backup is None:
            raise ValueError(f"Backup not found: {backup_id}")
        data = backup.get("data", {})

        restored = 0
        for entity_type in BACKUP_TYPES:
            records = [Record.from_payload(p) for p in data.get(entity_type.value, [])]
            keep = {r.id for r in records}
            for current in await self.store.list(entity_type):
                if current.id not in keep:
                    await self.delete(entity_type, current.id)
            for record in records:
                await self.put(record)
                restored += 1

        self.cache.clear()
        logger.info("Restored %d records from backup %s", restored, backup_id)
        return restored

    async def cleanup_old_data(self, older_than_days: int | None = None) -> dict[str, int]:
        """Prune old analytics and sessions and keep only the newest backups."""
        days = older_than_days if older_than_days is not None else self._config.retention_days
        cutoff = utcnow() - timedelta(days=days)
        removed: dict[str, int] = {}
        for entity_type in PRUNABLE_TYPES:
            removed[entity_type.value] = await self.store.prune_older_than(entity_type, cutoff)

        backups = await self.list_backups()
        stale = backups[MAX_BACKUPS:]
        for backup in stale:
            await self.store.delete(EntityType.BACKUPS, backup.id)
            await self.store.purge(EntityType.BACKUPS, backup.id)
        removed[EntityType.BACKUPS.value] = len(stale)
        logger.info("Cleanup removed %s", removed)
        return removed
