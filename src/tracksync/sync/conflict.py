"""Reconciliation of pulled remote records with local state.

Whole-record, last-writer-wins by ``updated_at``:
- no local copy: the remote record is written
- remote strictly newer: remote overwrites local, tombstones included, and
  pending queue items holding an older version are discarded
- a local write that lands mid-batch is newer, so it is kept and counted
  as unchanged
- otherwise local is kept; if it differs from the remote copy the local
  version is re-queued (a delete for tombstones)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from tracksync.core.entities import EntityType
from tracksync.core.record import Operation, Record
from tracksync.storage.base import LocalStore
from tracksync.sync.queue import SyncQueue

logger = logging.getLogger(__name__)


class Resolution(StrEnum):
    APPLY_REMOTE = "apply_remote"
    REQUEUE_LOCAL = "requeue_local"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ReconcileReport:
    entity_type: EntityType
    applied: int = 0
    requeued: int = 0
    unchanged: int = 0

    @property
    def kept_local(self) -> int:
        return self.requeued + self.unchanged

    @property
    def total(self) -> int:
        return self.applied + self.requeued + self.unchanged

    def merge(self, other: ReconcileReport) -> ReconcileReport:
        return ReconcileReport(
            entity_type=self.entity_type,
            applied=self.applied + other.applied,
            requeued=self.requeued + other.requeued,
            unchanged=self.unchanged + other.unchanged,
        )


def resolve_record_conflict(local: Record | None, remote: Record) -> Resolution:
    """Decide which copy of a record survives."""
    if local is None or remote.updated_at > local.updated_at:
        return Resolution.APPLY_REMOTE
    if local.same_content(remote):
        return Resolution.UNCHANGED
    return Resolution.REQUEUE_LOCAL


class ConflictResolver:
    """Applies :func:`resolve_record_conflict` to a batch of pulled records."""

    def __init__(self, store: LocalStore, queue: SyncQueue) -> None:
        self._store = store
        self._queue = queue

    async def reconcile(
        self,
        entity_type: EntityType | str,
        remote_records: Sequence[Record],
    ) -> ReconcileReport:
        entity_type = EntityType(entity_type)
        to_apply: list[Record] = []
        to_requeue: list[Record] = []
        unchanged = 0

        for remote in remote_records:
            local = await self._store.get(entity_type, remote.id, include_deleted=True)
            resolution = resolve_record_conflict(local, remote)
            if resolution == Resolution.APPLY_REMOTE:
                to_apply.append(remote)
            elif resolution == Resolution.REQUEUE_LOCAL:
                assert local is not None
                to_requeue.append(local)
            else:
                unchanged += 1

        # Local writes may land while this batch is being decided; the store
        # re-checks versions on write and skips anything now newer locally.
        applied = await self._store.apply_remote(to_apply)
        for record in applied:
            await self._queue.discard(entity_type, record.id, superseded_at=record.updated_at)
        overtaken = len(to_apply) - len(applied)
        if overtaken:
            logger.debug("%d pulled %s records overtaken by local writes", overtaken, entity_type)

        for local in to_requeue:
            operation = Operation.DELETE if local.deleted else Operation.UPDATE
            await self._queue.enqueue(entity_type, operation, local)

        report = ReconcileReport(entity_type, len(applied), len(to_requeue), unchanged + overtaken)
        if report.applied or report.requeued:
            logger.debug(
                "Reconciled %s: %d applied, %d requeued, %d unchanged",
                entity_type,
                report.applied,
                report.requeued,
                report.unchanged,
            )
        return report
