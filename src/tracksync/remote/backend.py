"""Remote table backends.

``RemoteBackend`` is the table-level interface the sync client talks to.
``HttpBackend`` implements it over a PostgREST-style HTTP API with aiohttp;
``InMemoryBackend`` (see memory_backend) serves tests and offline work.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from tracksync.errors import (
    AuthError,
    ConflictError,
    RemoteError,
    RemotePermissionError,
    SchemaError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]

# PostgREST / Postgres error codes
_PERMISSION_CODES = frozenset({"42501"})
_SCHEMA_CODES = frozenset({"42P01", "42703", "PGRST204", "PGRST205"})
_CONFLICT_CODES = frozenset({"23505"})
_TRANSIENT_STATUSES = frozenset({408, 425, 429})


class RemoteBackend(ABC):
    """
    Table-level remote API.

    All methods raise subclasses of ``RemoteError``. Filters are equality
    matches on column values.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        descending: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]: ...

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert one row and return it as stored (with generated columns)."""
        ...

    @abstractmethod
    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: str = "id") -> list[Row]:
        ...

    @abstractmethod
    async def update(self, table: str, values: Row, *, filters: Mapping[str, Any]) -> list[Row]:
        """Update matching rows. Returns the rows that matched."""
        ...

    @abstractmethod
    async def delete(self, table: str, *, filters: Mapping[str, Any]) -> list[Row]:
        """Delete matching rows. Returns the rows removed (may be empty)."""
        ...

    def set_access_token(self, token: str | None) -> None:  # noqa: B027
        """Use a session access token for subsequent calls. No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release network resources. No-op by default."""


def error_for_response(status: int, body: str, *, table: str) -> RemoteError:
    """Translate an HTTP error response into the error taxonomy."""
    code: str | None = None
    message = body
    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        payload = {}
    if isinstance(payload, dict):
        code = str(payload["code"]) if payload.get("code") is not None else None
        message = str(payload.get("message") or body)

    detail = f"{table}: {message}"
    if status == 401:
        return AuthError(detail, code=code, status_code=status)
    if status == 403 or code in _PERMISSION_CODES:
        return RemotePermissionError(detail, code=code, status_code=status)
    if status == 404 or code in _SCHEMA_CODES:
        return SchemaError(detail, table=table, code=code, status_code=status)
    if status == 409 or code in _CONFLICT_CODES:
        return ConflictError(detail, code=code, status_code=status)
    if status >= 500 or status in _TRANSIENT_STATUSES:
        return TransientNetworkError(detail, code=code, status_code=status)
    return RemoteError(detail, code=code, status_code=status)


class HttpBackend(RemoteBackend):
    """
    aiohttp client for a PostgREST-style table API.

    Usage:
        async with HttpBackend("https://project.example.co", api_key) as backend:
            rows = await backend.select("applications", filters={"user_id": 42})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        access_token: str | None = None,
    ) -> None:
        """
        Initialize the backend client.

        Args:
            base_url: Project URL; tables live under ``/rest/v1/<table>``
            api_key: Public API key sent as ``apikey``
            timeout: Overall request timeout in seconds
            access_token: Optional session token used as the Bearer credential
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._access_token = access_token
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpBackend:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _get_headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> list[Row]:
        """Make an HTTP request against a table endpoint."""
        if not self._session:
            await self.connect()

        assert self._session is not None

        url = f"{self._base_url}/rest/v1/{table}"

        try:
            async with self._session.request(
                method,
                url,
                json=json_data,
                params=params,
                headers=self._get_headers(prefer),
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    raise error_for_response(response.status, text, table=table)
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{table}: connection error: {e}") from e
        except aiohttp.ClientError as e:
            raise RemoteError(f"{table}: request failed: {e}") from e

        if not text:
            return []
        try:
            result = json.loads(text)
        except json.JSONDecodeError as e:
            raise RemoteError(f"{table}: invalid JSON response") from e
        if isinstance(result, dict):
            return [result]
        return list(result)

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
        params = {"select": "*", **_filter_params(filters)}
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        if offset:
            params["offset"] = str(offset)
        return await self._request("GET", table, params=params)

    async def insert(self, table: str, row: Row) -> Row:
        rows = await self._request("POST", table, json_data=row, prefer="return=representation")
        if not rows:
            raise SchemaError(f"{table}: insert returned no row", table=table)
        return rows[0]

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: str = "id") -> list[Row]:
        return await self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json_data=list(rows),
            prefer="resolution=merge-duplicates,return=representation",
        )

    async def update(self, table: str, values: Row, *, filters: Mapping[str, Any]) -> list[Row]:
        return await self._request(
            "PATCH",
            table,
            params=_filter_params(filters),
            json_data=values,
            prefer="return=representation",
        )

    async def delete(self, table: str, *, filters: Mapping[str, Any]) -> list[Row]:
        return await self._request(
            "DELETE",
            table,
            params=_filter_params(filters),
            prefer="return=representation",
        )


def _filter_params(filters: Mapping[str, Any] | None) -> dict[str, str]:
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}
