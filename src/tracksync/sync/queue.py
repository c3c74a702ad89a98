"""Durable background queue mirroring local mutations to the remote backend."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from tracksync.core.entities import SYNCABLE_TYPES, EntityType, get_spec
from tracksync.core.record import Operation, Record
from tracksync.core.sync_item import ItemState, SyncFailure, SyncQueueItem
from tracksync.errors import StorageError
from tracksync.remote.sync_client import PushStatus, RemoteSyncClient
from tracksync.storage.base import LocalStore
from tracksync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0


@dataclass(frozen=True)
class DrainReport:
    """Outcome of one drain pass over one entity type."""

    entity_type: EntityType
    attempted: int = 0
    confirmed: int = 0
    retried: int = 0
    abandoned: int = 0
    skipped: str | None = None  # why the pass did not run or stopped early


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    in_flight: int
    abandoned: int
    running: bool
    total_confirmed: int = 0
    last_drain_at: datetime | None = None
    recent_failures: tuple[SyncFailure, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "in_flight": self.in_flight,
            "abandoned": self.abandoned,
            "running": self.running,
            "total_confirmed": self.total_confirmed,
            "last_drain_at": self.last_drain_at.isoformat() if self.last_drain_at else None,
            "recent_failures": [
                {
                    "entity_type": f.entity_type.value,
                    "record_id": f.record_id,
                    "operation": f.operation.value,
                    "retry_count": f.retry_count,
                    "error": f.error,
                    "failed_at": f.failed_at.isoformat(),
                }
                for f in self.recent_failures
            ],
        }


def coalesce(previous: Operation, latest: Operation) -> Operation:
    """Operation that replaces a pending ``previous`` when ``latest`` arrives."""
    if latest == Operation.DELETE:
        return Operation.DELETE
    if previous == Operation.CREATE:
        return Operation.CREATE
    return latest


class SyncQueue:
    """
    Retry queue for remote mutations.

    Items are persisted in the local store and drained in enqueue order per
    entity type, one drain per type at a time. Failed pushes back off
    exponentially; after ``max_retries`` failures an item is abandoned (moved
    to the failure log) and the local data is left untouched.
    """

    def __init__(
        self,
        store: LocalStore,
        client: RemoteSyncClient,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        drain_interval: float = 30.0,
        min_drain_interval: float = 5.0,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._client = client
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._drain_interval = drain_interval
        self._min_drain_interval = min_drain_interval
        self._batch_size = batch_size
        self._locks: dict[EntityType, asyncio.Lock] = {}
        self._last_drain: dict[EntityType, float] = {}
        self._periodic_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[list[DrainReport]] | None = None
        self._total_confirmed = 0
        self._last_drain_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover(self) -> int:
        """Return items left in flight by a previous process to pending."""
        reset = await self._store.reset_in_flight_items()
        if reset:
            logger.info("Recovered %d in-flight sync items", reset)
        return reset

    def start(self) -> None:
        """Start the periodic drain task."""
        if self.is_running:
            return
        self._periodic_task = asyncio.create_task(self._run_periodic(), name="tracksync-drain")

    async def stop(self) -> None:
        """Stop background draining and wait for tasks to finish cancelling."""
        for task in (self._periodic_task, self._drain_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._periodic_task = None
        self._drain_task = None

    def request_drain(self) -> None:
        """Schedule an immediate background drain (e.g. on reconnect)."""
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self.drain(), name="tracksync-drain-now")

    async def wait_for_drain(self) -> None:
        """Wait for a drain scheduled by request_drain to finish."""
        task = self._drain_task
        if task is not None and not task.done():
            await task

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self._drain_interval)
            try:
                await self.drain()
            except Exception:
                logger.warning("Periodic drain failed", exc_info=True)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        entity_type: EntityType | str,
        operation: Operation | str,
        record: Record,
    ) -> SyncQueueItem | None:
        """Queue a mutation, coalescing with a pending item for the same record.

        Returns None for local-only entity types.
        """
        entity_type = EntityType(entity_type)
        operation = Operation(operation)
        if not get_spec(entity_type).syncable:
            return None

        existing = await self._store.find_pending_item(entity_type, record.id)
        if existing is not None:
            if existing.record.updated_at > record.updated_at:
                # A newer version is already queued
                logger.debug(
                    "Kept newer pending %s for %s/%s", existing.operation, entity_type, record.id
                )
                return existing
            merged = replace(
                existing,
                operation=coalesce(existing.operation, operation),
                payload=record.to_payload(),
                retry_count=0,
                next_attempt_at=utcnow(),
                last_error=None,
            )
            await self._store.update_queue_item(merged)
            logger.debug(
                "Coalesced %s into pending %s for %s/%s",
                operation,
                existing.operation,
                entity_type,
                record.id,
            )
            return merged

        item = SyncQueueItem.create(operation, record, max_retries=self._max_retries)
        return await self._store.save_queue_item(item)

    async def discard(
        self,
        entity_type: EntityType | str,
        record_id: str,
        *,
        superseded_at: datetime | None = None,
    ) -> int:
        """Drop pending items superseded by a newer remote copy.

        With ``superseded_at``, only items whose queued version is older than
        that remote version are dropped.
        """
        removed = await self._store.delete_pending_items(
            EntityType(entity_type), record_id, older_than=superseded_at
        )
        if removed:
            logger.debug("Discarded %d superseded items for %s/%s", removed, entity_type, record_id)
        return removed

    async def pending(self, entity_type: EntityType | str | None = None) -> list[SyncQueueItem]:
        return await self._store.load_queue_items(
            EntityType(entity_type) if entity_type is not None else None
        )

    async def status(self, failure_limit: int = 10) -> QueueStatus:
        """Queue counts plus the most recent abandoned items."""
        counts = await self._store.queue_counts()
        failures = await self._store.list_sync_failures(limit=failure_limit)
        return QueueStatus(
            pending=counts.get(ItemState.PENDING.value, 0),
            in_flight=counts.get(ItemState.IN_FLIGHT.value, 0),
            abandoned=counts.get("abandoned", 0),
            running=self.is_running,
            total_confirmed=self._total_confirmed,
            last_drain_at=self._last_drain_at,
            recent_failures=tuple(failures),
        )

    async def clear_failures(self) -> int:
        """Empty the failure log. Returns count removed."""
        removed = await self._store.clear_sync_failures()
        if removed:
            logger.info("Cleared %d sync failures", removed)
        return removed

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def drain(
        self,
        entity_type: EntityType | str | None = None,
        *,
        force: bool = False,
    ) -> list[DrainReport]:
        """Push due items for one type, or for every syncable type.

        ``force`` bypasses the minimum drain interval and item backoff.
        """
        types = [EntityType(entity_type)] if entity_type is not None else list(SYNCABLE_TYPES)
        reports: list[DrainReport] = []
        for current in types:
            try:
                reports.append(await self._drain_type(current, force))
            except StorageError as e:
                logger.error("Drain of %s abandoned: local store failed: %s", current, e)
                reports.append(DrainReport(current, skipped="storage_error"))
        return reports

    async def _drain_type(self, entity_type: EntityType, force: bool) -> DrainReport:
        lock = self._locks.setdefault(entity_type, asyncio.Lock())
        if lock.locked():
            return DrainReport(entity_type, skipped="in_progress")

        now_mono = time.monotonic()
        last = self._last_drain.get(entity_type)
        if not force and last is not None and now_mono - last < self._min_drain_interval:
            return DrainReport(entity_type, skipped="throttled")

        async with lock:
            self._last_drain[entity_type] = now_mono
            return await self._process(entity_type, force)

    async def _process(self, entity_type: EntityType, force: bool) -> DrainReport:
        items = await self._store.load_queue_items(
            entity_type, state=ItemState.PENDING, limit=self._batch_size
        )
        attempted = confirmed = retried = abandoned = 0
        skipped: str | None = None
        blocked: set[str] = set()
        now = utcnow()

        for item in items:
            if item.record_id in blocked:
                continue
            if not force and item.next_attempt_at > now:
                # Keep later items for this record behind it
                blocked.add(item.record_id)
                continue

            claimed = await self._store.claim_queue_item(item.id)
            if claimed is None:
                continue
            item = claimed
            attempted += 1
            result = await self._client.push(entity_type, item.record, item.operation)

            if result.status == PushStatus.CONFIRMED:
                await self._store.delete_queue_item(item.id)
                if item.operation == Operation.DELETE:
                    await self._store.purge(entity_type, item.record_id)
                confirmed += 1
                self._total_confirmed += 1
                continue

            if result.status in (PushStatus.UNAVAILABLE, PushStatus.AUTH_REQUIRED):
                await self._store.update_queue_item(replace(item, state=ItemState.PENDING))
                attempted -= 1
                skipped = result.status.value
                break

            error = result.error or result.status.value
            if result.status == PushStatus.REJECTED:
                await self._abandon(replace(item, last_error=error), error)
                abandoned += 1
            else:
                if await self._retry_or_abandon(item, error):
                    retried += 1
                else:
                    abandoned += 1
            blocked.add(item.record_id)

        if attempted:
            logger.debug(
                "Drained %s: %d attempted, %d confirmed, %d retried, %d abandoned",
                entity_type,
                attempted,
                confirmed,
                retried,
                abandoned,
            )
        self._last_drain_at = utcnow()
        return DrainReport(entity_type, attempted, confirmed, retried, abandoned, skipped)

    async def _retry_or_abandon(self, item: SyncQueueItem, error: str) -> bool:
        """Count a failure. Returns True if the item stays queued."""
        retry_count = item.retry_count + 1
        if retry_count >= item.max_retries:
            await self._abandon(replace(item, retry_count=retry_count, last_error=error), error)
            return False

        delay = min(self._retry_delay * (2 ** (retry_count - 1)), MAX_BACKOFF_SECONDS)
        await self._store.update_queue_item(
            replace(
                item,
                state=ItemState.PENDING,
                retry_count=retry_count,
                next_attempt_at=utcnow() + timedelta(seconds=delay),
                last_error=error,
            )
        )
        logger.warning(
            "Sync of %s/%s failed (attempt %d/%d), retrying in %.0fs: %s",
            item.entity_type,
            item.record_id,
            retry_count,
            item.max_retries,
            delay,
            error,
        )
        return True

    async def _abandon(self, item: SyncQueueItem, error: str) -> None:
        await self._store.record_sync_failure(item, error)
        logger.warning(
            "Abandoned %s of %s/%s after %d attempts: %s",
            item.operation,
            item.entity_type,
            item.record_id,
            item.retry_count,
            error,
        )
