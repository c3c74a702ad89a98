"""In-memory remote backend for tests and offline development."""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from tracksync.errors import ConflictError, RemoteError, SchemaError
from tracksync.remote.backend import RemoteBackend, Row

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    error: RemoteError
    remaining: int
    operation: str | None
    table: str | None


@dataclass
class InMemoryBackend(RemoteBackend):
    """Dict-backed tables with PostgREST-like semantics.

    - rows are keyed by ``id``; the ``users`` table generates integer ids
      and enforces a unique ``external_id``
    - ``fail_next`` injects errors for the next matching calls
    - ``delay`` makes every call sleep first (for timeout tests)
    - ``calls`` records ``(operation, table)`` for each call
    """

    tables: dict[str, dict[Any, Row]] = field(default_factory=dict)
    known_tables: set[str] | None = None
    delay: float = 0.0
    calls: list[tuple[str, str]] = field(default_factory=list)
    _failures: list[_InjectedFailure] = field(default_factory=list)
    _user_ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def fail_next(
        self,
        error: RemoteError,
        *,
        times: int = 1,
        operation: str | None = None,
        table: str | None = None,
    ) -> None:
        self._failures.append(_InjectedFailure(error, times, operation, table))

    def rows(self, table: str) -> list[Row]:
        """Copies of all rows in a table."""
        return [copy.deepcopy(r) for r in self.tables.get(table, {}).values()]

    def count_calls(self, operation: str | None = None, table: str | None = None) -> int:
        return sum(
            1
            for op, tbl in self.calls
            if (operation is None or op == operation) and (table is None or tbl == table)
        )

    async def _enter(self, operation: str, table: str) -> dict[Any, Row]:
        self.calls.append((operation, table))
        if self.delay:
            await asyncio.sleep(self.delay)
        for failure in self._failures:
            if failure.remaining <= 0:
                continue
            if failure.operation not in (None, operation) or failure.table not in (None, table):
                continue
            failure.remaining -= 1
            raise failure.error
        if self.known_tables is not None and table not in self.known_tables:
            raise SchemaError(f"relation {table!r} does not exist", table=table, code="42P01")
        return self.tables.setdefault(table, {})

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        descending: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]:
        data = await self._enter("select", table)
        rows = [r for r in data.values() if _matches(r, filters)]
        if order:
            rows.sort(key=lambda r: (r.get(order) is None, r.get(order) or ""), reverse=descending)
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def insert(self, table: str, row: Row) -> Row:
        data = await self._enter("insert", table)
        new_row = copy.deepcopy(row)
        if table == "users":
            external_id = new_row.get("external_id")
            if any(r.get("external_id") == external_id for r in data.values()):
                raise ConflictError(
                    "duplicate key value violates unique constraint", code="23505", status_code=409
                )
            new_row.setdefault("id", next(self._user_ids))
        if new_row.get("id") in data:
            raise ConflictError("duplicate key value", code="23505", status_code=409)
        data[new_row["id"]] = new_row
        return copy.deepcopy(new_row)

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: str = "id") -> list[Row]:
        data = await self._enter("upsert", table)
        stored: list[Row] = []
        for row in rows:
            key = row[on_conflict]
            merged = {**data.get(key, {}), **copy.deepcopy(row)}
            data[key] = merged
            stored.append(copy.deepcopy(merged))
        return stored

    async def update(self, table: str, values: Row, *, filters: Mapping[str, Any]) -> list[Row]:
        data = await self._enter("update", table)
        updated: list[Row] = []
        for key, row in data.items():
            if _matches(row, filters):
                data[key] = {**row, **copy.deepcopy(values)}
                updated.append(copy.deepcopy(data[key]))
        return updated

    async def delete(self, table: str, *, filters: Mapping[str, Any]) -> list[Row]:
        data = await self._enter("delete", table)
        removed = [key for key, row in data.items() if _matches(row, filters)]
        return [data.pop(key) for key in removed]


def _matches(row: Row, filters: Mapping[str, Any] | None) -> bool:
    return all(row.get(column) == value for column, value in (filters or {}).items())
