"""Core data structures."""

from tracksync.core.entities import (
    ENTITY_SPECS,
    SYNCABLE_TYPES,
    EntitySpec,
    EntityType,
    FieldKind,
    FieldSpec,
    get_spec,
)
from tracksync.core.record import Operation, Record, new_record_id
from tracksync.core.sync_item import AccountIdentity, ItemState, SyncFailure, SyncQueueItem

__all__ = [
    "ENTITY_SPECS",
    "SYNCABLE_TYPES",
    "AccountIdentity",
    "EntitySpec",
    "EntityType",
    "FieldKind",
    "FieldSpec",
    "ItemState",
    "Operation",
    "Record",
    "SyncFailure",
    "SyncQueueItem",
    "get_spec",
    "new_record_id",
]
