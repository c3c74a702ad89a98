"""Entity catalogue: the durable collections and their typed fields.

Each entity type declares its fields once. The SQLite schema, the remote
row mappers and record validation are all derived from these declarations.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class EntityType(StrEnum):
    """Durable collections. Values double as table names on both sides."""

    APPLICATIONS = "applications"
    GOALS = "goals"
    BACKUPS = "backups"  # local only
    ANALYTICS_EVENTS = "analytics_events"
    USER_SESSIONS = "user_sessions"
    USER_METRICS = "user_metrics"
    FEEDBACK = "feedback"
    PRIVACY_SETTINGS = "privacy_settings"


class FieldKind(StrEnum):
    """Value kinds, mapped to SQLite column affinities."""

    TEXT = "text"
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    JSON = "json"


_SQL_TYPES: dict[FieldKind, str] = {
    FieldKind.TEXT: "TEXT",
    FieldKind.INTEGER: "INTEGER",
    FieldKind.REAL: "REAL",
    FieldKind.BOOLEAN: "INTEGER",
    FieldKind.JSON: "TEXT",
}


@dataclass(frozen=True)
class FieldSpec:
    """A single entity field.

    Attributes:
        name: Field name in ``Record.fields`` and the local column name
        kind: Value kind used for coercion and column affinity
        column: Remote column name when it differs from ``name``
        indexed: Whether the field can be used for ordering and gets an index
    """

    name: str
    kind: FieldKind = FieldKind.TEXT
    column: str | None = None
    indexed: bool = False

    @property
    def remote_column(self) -> str:
        return self.column or self.name

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self.kind]

    def coerce(self, value: Any) -> Any:
        """Coerce a value to this field's kind. ``None`` passes through.

        Raises:
            ValueError: If the value cannot be represented as the field kind.
        """
        if value is None:
            return None
        try:
            if self.kind == FieldKind.TEXT:
                return str(value)
            if self.kind == FieldKind.INTEGER:
                if isinstance(value, bool):
                    return int(value)
                if isinstance(value, float) and not value.is_integer():
                    raise ValueError(f"non-integral value {value!r}")
                return int(value)
            if self.kind == FieldKind.REAL:
                return float(value)
            if self.kind == FieldKind.BOOLEAN:
                if isinstance(value, str):
                    return value.strip().lower() in ("true", "1", "yes")
                return bool(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Field {self.name!r} expects {self.kind}: {e}") from e
        return value


@dataclass(frozen=True)
class EntitySpec:
    """Declared shape of one entity type."""

    entity_type: EntityType
    fields: tuple[FieldSpec, ...]
    default_order: str = "created_at"
    syncable: bool = True

    @property
    def table(self) -> str:
        return self.entity_type.value

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def orderable(self) -> frozenset[str]:
        indexed = {f.name for f in self.fields if f.indexed}
        return frozenset({"created_at", "updated_at", *indexed})

    def field(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(f"{self.table} has no field {name!r}")

    def normalize(self, values: dict[str, Any]) -> dict[str, Any]:
        """Validate and coerce a field mapping.

        Every declared field is present in the result (missing ones are
        ``None``).

        Raises:
            ValueError: On unknown field names or uncoercible values.
        """
        unknown = set(values) - set(self.field_names)
        if unknown:
            raise ValueError(f"Unknown fields for {self.table}: {', '.join(sorted(unknown))}")
        return {spec.name: spec.coerce(values.get(spec.name)) for spec in self.fields}


ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    EntityType.APPLICATIONS: EntitySpec(
        EntityType.APPLICATIONS,
        (
            FieldSpec("company", indexed=True),
            FieldSpec("position"),
            FieldSpec("date_applied", indexed=True),
            FieldSpec("status", indexed=True),
            FieldSpec("type"),
            FieldSpec("location"),
            FieldSpec("salary"),
            FieldSpec("job_source"),
            FieldSpec("job_url"),
            FieldSpec("notes"),
            FieldSpec("attachments", FieldKind.JSON),
        ),
        default_order="date_applied",
    ),
    EntityType.GOALS: EntitySpec(
        EntityType.GOALS,
        (
            FieldSpec("total_goal", FieldKind.INTEGER),
            FieldSpec("weekly_goal", FieldKind.INTEGER),
            FieldSpec("monthly_goal", FieldKind.INTEGER),
        ),
    ),
    EntityType.BACKUPS: EntitySpec(
        EntityType.BACKUPS,
        (
            FieldSpec("timestamp", indexed=True),
            FieldSpec("version", FieldKind.INTEGER),
            FieldSpec("data", FieldKind.JSON),
        ),
        default_order="timestamp",
        syncable=False,
    ),
    EntityType.ANALYTICS_EVENTS: EntitySpec(
        EntityType.ANALYTICS_EVENTS,
        (
            FieldSpec("event", column="event_name", indexed=True),
            FieldSpec("properties", FieldKind.JSON),
            FieldSpec("timestamp", indexed=True),
            FieldSpec("session_id", indexed=True),
        ),
        default_order="timestamp",
    ),
    EntityType.USER_SESSIONS: EntitySpec(
        EntityType.USER_SESSIONS,
        (
            FieldSpec("start_time", indexed=True),
            FieldSpec("end_time"),
            FieldSpec("duration", FieldKind.INTEGER),
            FieldSpec("device_type"),
            FieldSpec("user_agent"),
            FieldSpec("timezone"),
            FieldSpec("language"),
        ),
        default_order="start_time",
    ),
    EntityType.USER_METRICS: EntitySpec(
        EntityType.USER_METRICS,
        (
            FieldSpec("sessions_count", FieldKind.INTEGER),
            FieldSpec("total_time_spent", FieldKind.INTEGER),
            FieldSpec("applications_created", FieldKind.INTEGER),
            FieldSpec("features_used", FieldKind.JSON),
            FieldSpec("last_active_date"),
            FieldSpec("device_type"),
            FieldSpec("first_visit"),
            FieldSpec("total_events", FieldKind.INTEGER),
        ),
    ),
    EntityType.FEEDBACK: EntitySpec(
        EntityType.FEEDBACK,
        (
            FieldSpec("type", indexed=True),
            FieldSpec("rating", FieldKind.INTEGER),
            FieldSpec("message"),
            FieldSpec("email"),
            FieldSpec("timestamp", indexed=True),
            FieldSpec("session_id"),
            FieldSpec("user_agent"),
            FieldSpec("url"),
            FieldSpec("metadata", FieldKind.JSON),
        ),
        default_order="timestamp",
    ),
    EntityType.PRIVACY_SETTINGS: EntitySpec(
        EntityType.PRIVACY_SETTINGS,
        (
            FieldSpec("analytics", FieldKind.BOOLEAN),
            FieldSpec("feedback", FieldKind.BOOLEAN),
            FieldSpec("functional_cookies", FieldKind.BOOLEAN),
            FieldSpec("consent_date"),
            FieldSpec("consent_version"),
        ),
    ),
}

SYNCABLE_TYPES: tuple[EntityType, ...] = tuple(
    spec.entity_type for spec in ENTITY_SPECS.values() if spec.syncable
)


def get_spec(entity_type: EntityType | str) -> EntitySpec:
    """Look up the declared shape of an entity type (accepts the string value)."""
    try:
        return ENTITY_SPECS[EntityType(entity_type)]
    except ValueError as e:
        raise ValueError(f"Unknown entity type: {entity_type!r}") from e
