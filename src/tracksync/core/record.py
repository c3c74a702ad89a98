"""Record - the unit of storage and synchronization."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from tracksync.core.entities import EntityType, get_spec
from tracksync.utils.timeutils import parse_timestamp, to_local_text, utcnow


class Operation(StrEnum):
    """Mutation kinds mirrored to the remote backend."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def new_record_id() -> str:
    """Generate a client-side record identifier."""
    return str(uuid4())


@dataclass(frozen=True)
class Record:
    """
    A single entity row.

    Records are immutable; edits produce a new Record via ``with_fields``.
    The ``id`` is generated on the client and is the join key with the
    remote copy. ``fields`` always carries every declared field of the
    entity type (absent values are ``None``).

    Attributes:
        entity_type: Collection the record belongs to
        id: Client-generated identifier
        fields: Entity-specific values
        created_at: Set once on first write, never overwritten
        updated_at: Advanced on every local write
        deleted: Tombstone flag for soft deletes
    """

    entity_type: EntityType
    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted: bool = False

    def __post_init__(self) -> None:
        entity_type = EntityType(self.entity_type)
        object.__setattr__(self, "entity_type", entity_type)
        object.__setattr__(self, "fields", get_spec(entity_type).normalize(self.fields))
        if not self.id:
            raise ValueError("Record id must be a non-empty string")

    @classmethod
    def create(
        cls,
        entity_type: EntityType | str,
        fields: dict[str, Any] | None = None,
        record_id: str | None = None,
    ) -> Record:
        """
        Factory method to create a new Record.

        Args:
            entity_type: Collection for the record
            fields: Field values (validated against the entity spec)
            record_id: Optional explicit ID (generates UUID if not provided)

        Returns:
            A new Record stamped with the current time
        """
        now = utcnow()
        return cls(
            entity_type=EntityType(entity_type),
            id=record_id or new_record_id(),
            fields=fields or {},
            created_at=now,
            updated_at=now,
        )

    def get(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value is None else value

    def with_fields(self, changes: dict[str, Any]) -> Record:
        """Return a copy with some fields replaced."""
        return replace(self, fields={**self.fields, **changes})

    def same_content(self, other: Record) -> bool:
        """True when fields and tombstone state match, ignoring timestamps."""
        return self.fields == other.fields and self.deleted == other.deleted

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe snapshot used by the sync queue and backups."""
        return {
            "entity_type": self.entity_type.value,
            "id": self.id,
            "fields": dict(self.fields),
            "created_at": to_local_text(self.created_at),
            "updated_at": to_local_text(self.updated_at),
            "deleted": self.deleted,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Record:
        return cls(
            entity_type=EntityType(payload["entity_type"]),
            id=payload["id"],
            fields=payload.get("fields", {}),
            created_at=parse_timestamp(payload["created_at"]),
            updated_at=parse_timestamp(payload["updated_at"]),
            deleted=bool(payload.get("deleted", False)),
        )
