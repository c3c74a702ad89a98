"""Durable sync state: queue items and the cached account identity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from tracksync.core.entities import EntityType
from tracksync.core.record import Operation, Record
from tracksync.utils.timeutils import utcnow


class ItemState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class SyncQueueItem:
    """A pending remote mutation.

    Invariant: ``retry_count < max_retries`` while the item is in the queue.
    Items that reach the bound are moved to the failure log.
    """

    id: str
    entity_type: EntityType
    record_id: str
    operation: Operation
    payload: dict[str, Any] = field(default_factory=dict)
    state: ItemState = ItemState.PENDING
    retry_count: int = 0
    max_retries: int = 3
    enqueued_at: datetime = field(default_factory=utcnow)
    next_attempt_at: datetime = field(default_factory=utcnow)
    last_error: str | None = None
    seq: int = 0  # Assigned by the durable queue, defines drain order

    @classmethod
    def create(cls, operation: Operation, record: Record, max_retries: int = 3) -> SyncQueueItem:
        now = utcnow()
        return cls(
            id=str(uuid4()),
            entity_type=record.entity_type,
            record_id=record.id,
            operation=operation,
            payload=record.to_payload(),
            max_retries=max_retries,
            enqueued_at=now,
            next_attempt_at=now,
        )

    @property
    def record(self) -> Record:
        return Record.from_payload(self.payload)


@dataclass(frozen=True)
class SyncFailure:
    """An abandoned queue item kept for inspection."""

    item_id: str
    entity_type: EntityType
    record_id: str
    operation: Operation
    retry_count: int
    error: str
    failed_at: datetime


@dataclass(frozen=True)
class AccountIdentity:
    """Mapping from the active session to the remote account key."""

    session_id: str
    account_key: int
    cached_at: datetime = field(default_factory=utcnow)
