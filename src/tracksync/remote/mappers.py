"""Row mappers between local records and remote table rows.

Remote column names are defined here and nowhere else. Each entity type has
one mapper used for both directions, so ``from_row(to_row(r)) == r`` holds
for every live record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from tracksync.core.entities import ENTITY_SPECS, EntitySpec, EntityType, get_spec
from tracksync.core.record import Record
from tracksync.errors import SchemaError
from tracksync.utils.timeutils import parse_timestamp, to_remote_text

ID_COLUMN = "id"
ACCOUNT_COLUMN = "user_id"
CREATED_AT_COLUMN = "created_at"
UPDATED_AT_COLUMN = "updated_at"
SYNCED_AT_COLUMN = "synced_at"

USERS_TABLE = "users"
EXTERNAL_ID_COLUMN = "external_id"

_BOOKKEEPING = (ID_COLUMN, CREATED_AT_COLUMN, UPDATED_AT_COLUMN)


class RowMapper:
    """Maps one entity type to and from its remote table."""

    def __init__(self, spec: EntitySpec) -> None:
        self._spec = spec

    @property
    def entity_type(self) -> EntityType:
        return self._spec.entity_type

    @property
    def table(self) -> str:
        return self._spec.table

    def column_for(self, field_name: str) -> str:
        """Remote column name for a local field name."""
        if field_name in _BOOKKEEPING:
            return field_name
        return self._spec.field(field_name).remote_column

    def remote_order_column(self, field_name: str) -> str:
        """Remote column for an orderable local field name."""
        if field_name not in self._spec.orderable:
            raise ValueError(f"Cannot order {self.table} by {field_name!r}")
        return self.column_for(field_name)

    def to_row(
        self,
        record: Record,
        *,
        account_key: int,
        synced_at: datetime | None = None,
    ) -> dict[str, Any]:
        row: dict[str, Any] = {
            ID_COLUMN: record.id,
            ACCOUNT_COLUMN: account_key,
            CREATED_AT_COLUMN: to_remote_text(record.created_at),
            UPDATED_AT_COLUMN: to_remote_text(record.updated_at),
        }
        for spec in self._spec.fields:
            row[spec.remote_column] = record.fields.get(spec.name)
        if synced_at is not None:
            row[SYNCED_AT_COLUMN] = to_remote_text(synced_at)
        return row

    def from_row(self, row: dict[str, Any]) -> Record:
        """Build a Record from a remote row.

        Raises:
            SchemaError: If expected columns are missing or values do not fit
                the declared field kinds.
        """
        expected = (*_BOOKKEEPING, *(f.remote_column for f in self._spec.fields))
        missing = [column for column in expected if column not in row]
        if missing:
            raise SchemaError(
                f"{self.table}: row is missing columns {', '.join(missing)}",
                table=self.table,
                columns=missing,
            )
        try:
            return Record(
                entity_type=self._spec.entity_type,
                id=str(row[ID_COLUMN]),
                fields={f.name: row[f.remote_column] for f in self._spec.fields},
                created_at=parse_timestamp(row[CREATED_AT_COLUMN]),
                updated_at=parse_timestamp(row[UPDATED_AT_COLUMN]),
            )
        except ValueError as e:
            raise SchemaError(f"{self.table}: {e}", table=self.table) from e

    @staticmethod
    def account_of(row: dict[str, Any]) -> Any:
        return row.get(ACCOUNT_COLUMN)


MAPPERS: dict[EntityType, RowMapper] = {
    entity_type: RowMapper(spec) for entity_type, spec in ENTITY_SPECS.items()
}


def get_mapper(entity_type: EntityType | str) -> RowMapper:
    return MAPPERS[get_spec(entity_type).entity_type]
