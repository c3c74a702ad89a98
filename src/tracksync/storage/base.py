"""Abstract base class for local storage backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tracksync.core.entities import EntityType
    from tracksync.core.record import Record
    from tracksync.core.sync_item import AccountIdentity, ItemState, SyncFailure, SyncQueueItem

ChangeListener = Callable[["EntityType", tuple[str, ...]], None]


@dataclass(frozen=True)
class StorageHealth:
    """Snapshot of the durable medium's state."""

    is_healthy: bool
    used_bytes: int
    quota_bytes: int
    available_bytes: int
    total_errors: int
    recent_errors: int
    last_error: str | None = None
    last_error_code: str | None = None
    last_error_at: datetime | None = None

    @property
    def usage_ratio(self) -> float:
        return self.used_bytes / self.quota_bytes if self.quota_bytes > 0 else 0.0


class LocalStore(ABC):
    """
    Abstract interface for the durable local store.

    The local store is the source of truth for all reads. Writes are durable
    once they return; every write raises a change notification (entity type
    and affected ids) to subscribers before returning.

    Failures of the underlying medium raise ``StorageError``.
    """

    # ========== Lifecycle ==========

    @abstractmethod
    async def initialize(self) -> None:
        """Open the medium and create or migrate the schema. Idempotent."""
        ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        ...

    @abstractmethod
    async def health(self) -> StorageHealth: ...

    # ========== Record Operations ==========

    @abstractmethod
    async def get(
        self,
        entity_type: EntityType,
        record_id: str,
        *,
        include_deleted: bool = False,
    ) -> Record | None:
        """
        Get a record by id.

        Args:
            entity_type: Collection to read
            record_id: Record identifier
            include_deleted: Return tombstones as well

        Returns:
            The record, or None when absent (or tombstoned)
        """
        ...

    @abstractmethod
    async def list(
        self,
        entity_type: EntityType,
        order_by: str | None = None,
        *,
        descending: bool = True,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        """
        List records of one type.

        Raises:
            ValueError: If order_by is not an orderable field of the type
        """
        ...

    @abstractmethod
    async def put(self, record: Record) -> Record:
        """
        Write a record as a local edit.

        ``updated_at`` is advanced to at least the current time and strictly
        past the stored version; ``created_at`` of an existing record is kept.

        Returns:
            The record as stored
        """
        ...

    @abstractmethod
    async def delete(self, entity_type: EntityType, record_id: str) -> Record | None:
        """Tombstone a record. Returns the tombstone, or None if absent."""
        ...

    @abstractmethod
    async def bulk_put(self, records: Sequence[Record]) -> int:
        """Write records with their timestamps preserved. Returns count written."""
        ...

    @abstractmethod
    async def apply_remote(self, records: Sequence[Record]) -> list[Record]:
        """
        Write pulled records where strictly newer than the stored version.

        The version check and the write are one statement per record, so a
        local write that lands first is never overwritten by an older copy.

        Returns:
            The records that were written
        """
        ...

    @abstractmethod
    async def purge(self, entity_type: EntityType, record_id: str) -> bool:
        """Hard-remove a tombstone. Live records are never purged."""
        ...

    @abstractmethod
    async def clear(self, entity_types: Iterable[EntityType] | None = None) -> None: ...

    @abstractmethod
    async def prune_older_than(self, entity_type: EntityType, cutoff: datetime) -> int:
        """Hard-remove records created before ``cutoff``. Returns count removed."""
        ...

    # ========== Sync Queue Persistence ==========

    @abstractmethod
    async def save_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        """Insert a queue item. Returns it with its sequence number assigned."""
        ...

    @abstractmethod
    async def update_queue_item(self, item: SyncQueueItem) -> None: ...

    @abstractmethod
    async def claim_queue_item(self, item_id: str) -> SyncQueueItem | None:
        """Mark a pending item in flight and return its latest state."""
        ...

    @abstractmethod
    async def delete_queue_item(self, item_id: str) -> bool: ...

    @abstractmethod
    async def find_pending_item(
        self, entity_type: EntityType, record_id: str
    ) -> SyncQueueItem | None: ...

    @abstractmethod
    async def load_queue_items(
        self,
        entity_type: EntityType | None = None,
        *,
        state: ItemState | None = None,
        limit: int = 1000,
    ) -> list[SyncQueueItem]:
        """Queue items in enqueue order."""
        ...

    @abstractmethod
    async def delete_pending_items(
        self,
        entity_type: EntityType,
        record_id: str,
        *,
        older_than: datetime | None = None,
    ) -> int:
        """Drop pending items for a record, optionally only those whose queued
        version was last updated before ``older_than``."""
        ...

    @abstractmethod
    async def reset_in_flight_items(self) -> int: ...

    @abstractmethod
    async def record_sync_failure(self, item: SyncQueueItem, error: str) -> None: ...

    @abstractmethod
    async def list_sync_failures(self, limit: int = 100) -> list[SyncFailure]:
        """Abandoned items, most recent first."""
        ...

    @abstractmethod
    async def clear_sync_failures(self) -> int: ...

    @abstractmethod
    async def queue_counts(self) -> dict[str, int]:
        """Counts keyed by item state plus ``abandoned``."""
        ...

    # ========== Identity Cache ==========

    @abstractmethod
    async def load_identity(self) -> AccountIdentity | None: ...

    @abstractmethod
    async def save_identity(self, identity: AccountIdentity) -> None: ...

    @abstractmethod
    async def clear_identity(self) -> None: ...
