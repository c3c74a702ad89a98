"""Timestamp helpers.

All timestamps inside tracksync are naive datetimes in UTC. Naive UTC values
compare and sort correctly, and their ISO form sorts lexicographically, which
the SQLite layer relies on for ordering and range filters.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an ISO timestamp (or normalize a datetime) to naive UTC.

    Accepts offset-aware values such as ``2026-01-15T10:00:00+00:00`` or
    ``...Z`` as returned by the remote backend.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def to_local_text(value: datetime) -> str:
    """Fixed-width ISO text used for local storage columns."""
    return value.isoformat(timespec="microseconds")


def to_remote_text(value: datetime) -> str:
    """Offset-qualified ISO text sent to the remote backend."""
    return value.replace(tzinfo=UTC).isoformat(timespec="microseconds")
