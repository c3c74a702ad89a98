"""Cross-account usage rollups for the admin dashboard.

Rows are fetched with unscoped paged pulls and reduced by :func:`summarize`,
a pure function over ``{entity_type: rows}``. When the remote is not
reachable the same rollups run over local records, mapped through the same
row mappers and attributed to a single local account.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from tracksync.core.entities import EntityType
from tracksync.remote.mappers import ACCOUNT_COLUMN, CREATED_AT_COLUMN, UPDATED_AT_COLUMN, get_mapper
from tracksync.remote.sync_client import RemoteSyncClient
from tracksync.storage.base import LocalStore
from tracksync.utils.timeutils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

REPORT_TYPES: tuple[EntityType, ...] = (
    EntityType.APPLICATIONS,
    EntityType.ANALYTICS_EVENTS,
    EntityType.USER_SESSIONS,
    EntityType.FEEDBACK,
)
LOCAL_ACCOUNT_KEY = 0
FEATURE_EVENT = "feature_used"
WINDOWS = {"day": 1, "week": 7, "month": 30}
RETENTION_DAYS = (1, 7, 30)
TREND_DAYS = 30
TOP_ISSUES = 5
MIN_ISSUE_WORD = 5

Rows = dict[EntityType, list[dict[str, Any]]]


@dataclass(frozen=True)
class WindowCounts:
    day: int = 0
    week: int = 0
    month: int = 0


@dataclass(frozen=True)
class FeedbackSummary:
    total: int = 0
    average_rating: float = 0.0
    by_type: dict[str, int] = field(default_factory=dict)
    top_issues: list[tuple[str, int]] = field(default_factory=list)


@dataclass(frozen=True)
class AdminReport:
    """Rollups across every account (or the local device when offline)."""

    source: str  # "remote" or "local"
    generated_at: datetime
    total_accounts: int
    active_accounts: WindowCounts
    new_accounts: WindowCounts
    daily_active: list[tuple[str, int]]
    total_applications: int
    status_distribution: dict[str, int]
    feature_usage: dict[str, int]
    device_mix: dict[str, int]
    retention: dict[str, float]
    total_sessions: int
    average_session_duration_ms: float
    feedback: FeedbackSummary
    rows_scanned: int
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        return data


class AdminAggregator:
    """Builds :class:`AdminReport` from remote rows, falling back to local data."""

    def __init__(
        self,
        client: RemoteSyncClient,
        store: LocalStore,
        *,
        page_size: int = 1000,
        max_rows: int = 10000,
    ) -> None:
        self._client = client
        self._store = store
        self._page_size = page_size
        self._max_rows = max_rows

    async def build_report(self, now: datetime | None = None) -> AdminReport:
        now = now or utcnow()
        fetched = await self._fetch_remote() if self._client.available else None
        if fetched is not None:
            rows, truncated = fetched
            return summarize(rows, now=now, source="remote", truncated=truncated)

        logger.info("Remote unavailable, building admin report from local data")
        return summarize(await self._fetch_local(), now=now, source="local")

    async def _fetch_remote(self) -> tuple[Rows, bool] | None:
        rows: Rows = {}
        truncated = False
        for entity_type in REPORT_TYPES:
            collected: list[dict[str, Any]] = []
            while len(collected) < self._max_rows:
                result = await self._client.pull_unscoped(
                    entity_type, limit=self._page_size, offset=len(collected)
                )
                if not result.ok:
                    logger.warning("Admin pull of %s failed: %s", entity_type, result.error)
                    return None
                collected.extend(result.rows)
                if len(result.rows) < self._page_size:
                    break
            else:
                truncated = True
                logger.warning("Admin report truncated %s at %d rows", entity_type, self._max_rows)
            rows[entity_type] = collected[: self._max_rows]
        return rows, truncated

    async def _fetch_local(self) -> Rows:
        rows: Rows = {}
        for entity_type in REPORT_TYPES:
            mapper = get_mapper(entity_type)
            records = await self._store.list(entity_type)
            rows[entity_type] = [
                mapper.to_row(record, account_key=LOCAL_ACCOUNT_KEY) for record in records
            ]
        return rows


# ── Rollups ──────────────────────────────────────────────────────────


def _timestamp(row: dict[str, Any], column: str) -> datetime | None:
    value = row.get(column)
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        logger.debug("Skipping unparseable %s value %r", column, value)
        return None


def _activity(rows: Rows) -> dict[Any, list[datetime]]:
    """Activity timestamps per account across every report type."""
    activity: dict[Any, list[datetime]] = {}
    for type_rows in rows.values():
        for row in type_rows:
            account = row.get(ACCOUNT_COLUMN)
            if account is None:
                continue
            stamps = activity.setdefault(account, [])
            for column in (CREATED_AT_COLUMN, UPDATED_AT_COLUMN):
                ts = _timestamp(row, column)
                if ts is not None:
                    stamps.append(ts)
    return activity


def _window_counts(times: list[datetime], now: datetime) -> WindowCounts:
    counts = {
        name: sum(1 for t in times if t >= now - timedelta(days=days))
        for name, days in WINDOWS.items()
    }
    return WindowCounts(**counts)


def _retention(activity: dict[Any, list[datetime]], now: datetime) -> dict[str, float]:
    """Share of accounts (percent) active again N days after first activity.

    Only accounts whose first activity is at least N days old are eligible.
    """
    result: dict[str, float] = {}
    for days in RETENTION_DAYS:
        eligible = returned = 0
        for stamps in activity.values():
            if not stamps:
                continue
            first = min(stamps)
            if first > now - timedelta(days=days):
                continue
            eligible += 1
            if any(t >= first + timedelta(days=days) for t in stamps):
                returned += 1
        result[f"day{days}"] = round(100.0 * returned / eligible, 1) if eligible else 0.0
    return result


def _daily_active(activity: dict[Any, list[datetime]], now: datetime) -> list[tuple[str, int]]:
    days_active: dict[date, set[Any]] = {}
    for account, stamps in activity.items():
        for ts in stamps:
            days_active.setdefault(ts.date(), set()).add(account)
    today = now.date()
    return [
        (day.isoformat(), len(days_active.get(day, ())))
        for day in (today - timedelta(days=offset) for offset in range(TREND_DAYS - 1, -1, -1))
    ]


def _feature_of(row: dict[str, Any]) -> str:
    properties = row.get("properties")
    if isinstance(properties, str):
        try:
            properties = json.loads(properties)
        except json.JSONDecodeError:
            return "unknown"
    if not isinstance(properties, dict):
        return "unknown"
    return str(properties.get("feature") or "unknown")


def _device_mix(sessions: list[dict[str, Any]]) -> dict[str, int]:
    """Latest device type per account."""
    latest: dict[Any, tuple[datetime, str]] = {}
    for row in sessions:
        device = row.get("device_type")
        account = row.get(ACCOUNT_COLUMN)
        ts = _timestamp(row, CREATED_AT_COLUMN)
        if not device or account is None or ts is None:
            continue
        if account not in latest or ts > latest[account][0]:
            latest[account] = (ts, str(device))
    return dict(Counter(device for _, device in latest.values()))


def _feedback_summary(feedback: list[dict[str, Any]]) -> FeedbackSummary:
    ratings = [int(r["rating"]) for r in feedback if isinstance(r.get("rating"), (int, float))]
    by_type = Counter(str(r.get("type") or "general") for r in feedback)

    words: Counter[str] = Counter()
    for row in feedback:
        if row.get("type") == "bug" and row.get("message"):
            words.update(w for w in str(row["message"]).lower().split() if len(w) >= MIN_ISSUE_WORD)

    return FeedbackSummary(
        total=len(feedback),
        average_rating=round(sum(ratings) / len(ratings), 2) if ratings else 0.0,
        by_type=dict(by_type),
        top_issues=words.most_common(TOP_ISSUES),
    )


def summarize(rows: Rows, *, now: datetime, source: str, truncated: bool = False) -> AdminReport:
    """Reduce fetched rows to an :class:`AdminReport`."""
    applications = rows.get(EntityType.APPLICATIONS, [])
    events = rows.get(EntityType.ANALYTICS_EVENTS, [])
    sessions = rows.get(EntityType.USER_SESSIONS, [])
    feedback = rows.get(EntityType.FEEDBACK, [])

    activity = _activity(rows)
    last_seen = [max(stamps) for stamps in activity.values() if stamps]
    first_seen = [min(stamps) for stamps in activity.values() if stamps]

    event_column = get_mapper(EntityType.ANALYTICS_EVENTS).column_for("event")
    feature_usage = Counter(
        _feature_of(row)
        for row in events
        if row.get(event_column) == FEATURE_EVENT
    )
    durations = [r["duration"] for r in sessions if isinstance(r.get("duration"), (int, float))]

    return AdminReport(
        source=source,
        generated_at=now,
        total_accounts=len(activity),
        active_accounts=_window_counts(last_seen, now),
        new_accounts=_window_counts(first_seen, now),
        daily_active=_daily_active(activity, now),
        total_applications=len(applications),
        status_distribution=dict(Counter(str(r.get("status") or "unknown") for r in applications)),
        feature_usage=dict(feature_usage),
        device_mix=_device_mix(sessions),
        retention=_retention(activity, now),
        total_sessions=len(sessions),
        average_session_duration_ms=round(sum(durations) / len(durations), 1) if durations else 0.0,
        feedback=_feedback_summary(feedback),
        rows_scanned=sum(len(type_rows) for type_rows in rows.values()),
        truncated=truncated,
    )


__all__ = [
    "AdminAggregator",
    "AdminReport",
    "FeedbackSummary",
    "WindowCounts",
    "summarize",
]
