"""Push/pull synchronization against the remote backend.

Every backend call is raced against a timeout and transient failures are
retried with a linear delay. Failures never escape as exceptions: pushes
report a :class:`PushStatus`, pulls report ``ok=False`` with no records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from tracksync.core.entities import EntityType, get_spec
from tracksync.core.record import Operation, Record
from tracksync.errors import (
    AuthError,
    ConflictError,
    RemoteError,
    RemotePermissionError,
    SchemaError,
    TransientNetworkError,
)
from tracksync.remote.backend import RemoteBackend
from tracksync.remote.mappers import ACCOUNT_COLUMN, ID_COLUMN, get_mapper
from tracksync.sync.auth import AuthStateManager
from tracksync.sync.connectivity import ConnectivityMonitor
from tracksync.sync.identity import IdentityResolver
from tracksync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PushStatus(StrEnum):
    CONFIRMED = "confirmed"  # remote accepted the mutation
    UNAVAILABLE = "unavailable"  # offline, unconfigured or no account key
    FAILED = "failed"  # retryable failure after exhausting request retries
    REJECTED = "rejected"  # permission or schema error, never retried
    AUTH_REQUIRED = "auth_required"  # session rejected, sign-in needed


@dataclass(frozen=True)
class PushResult:
    status: PushStatus
    entity_type: EntityType
    record_id: str
    operation: Operation
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == PushStatus.CONFIRMED


@dataclass(frozen=True)
class PullOptions:
    limit: int | None = None
    offset: int = 0
    order_by: str = "created_at"
    descending: bool = True


@dataclass(frozen=True)
class PullResult:
    records: list[Record] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    ok: bool = True
    error: str | None = None


class RemoteSyncClient:
    """Mirrors local mutations to the remote backend and fetches remote rows."""

    def __init__(
        self,
        backend: RemoteBackend | None,
        identity: IdentityResolver,
        auth: AuthStateManager,
        connectivity: ConnectivityMonitor,
        *,
        push_timeout: float = 10.0,
        pull_timeout: float = 20.0,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        page_size: int = 50,
        max_page_size: int = 1000,
    ) -> None:
        self._backend = backend
        self._identity = identity
        self._auth = auth
        self._connectivity = connectivity
        self._push_timeout = push_timeout
        self._pull_timeout = pull_timeout
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._page_size = page_size
        self._max_page_size = max_page_size

    @property
    def available(self) -> bool:
        """Remote configured, network up and the session not rejected."""
        return (
            self._backend is not None
            and self._connectivity.is_online
            and not self._auth.current.needs_reauth
        )

    async def current_account_key(self) -> int | None:
        """Resolve the account key for the active session, or None."""
        state = self._auth.current
        if not self.available or state.session_id is None:
            return None
        try:
            return await self._identity.resolve(state.session_id)
        except AuthError as e:
            await self._handle_auth_error(e)
            return None

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(
        self,
        entity_type: EntityType | str,
        record: Record,
        operation: Operation | str,
    ) -> PushResult:
        entity_type = EntityType(entity_type)
        operation = Operation(operation)

        def result(status: PushStatus, error: str | None = None) -> PushResult:
            return PushResult(status, entity_type, record.id, operation, error)

        if not get_spec(entity_type).syncable:
            return result(PushStatus.REJECTED, f"{entity_type} is local only")

        account_key = await self.current_account_key()
        if account_key is None:
            if self._auth.current.needs_reauth:
                return result(PushStatus.AUTH_REQUIRED, "re-authentication required")
            return result(PushStatus.UNAVAILABLE, "sync unavailable")

        description = f"{operation} {entity_type}/{record.id}"
        try:
            await self._with_retries(
                description,
                lambda: self._apply(entity_type, record, operation, account_key),
                self._push_timeout,
            )
        except AuthError as e:
            await self._handle_auth_error(e)
            return result(PushStatus.AUTH_REQUIRED, str(e))
        except (RemotePermissionError, SchemaError, ConflictError) as e:
            logger.error("Remote rejected %s: %s", description, e)
            return result(PushStatus.REJECTED, str(e))
        except RemoteError as e:
            logger.warning("Push %s failed: %s", description, e)
            return result(PushStatus.FAILED, str(e))

        logger.debug("Pushed %s", description)
        return result(PushStatus.CONFIRMED)

    async def _apply(
        self,
        entity_type: EntityType,
        record: Record,
        operation: Operation,
        account_key: int,
    ) -> None:
        assert self._backend is not None
        mapper = get_mapper(entity_type)
        scope = {ID_COLUMN: record.id, ACCOUNT_COLUMN: account_key}

        if operation == Operation.DELETE:
            # Zero matched rows means it is already gone
            await self._backend.delete(mapper.table, filters=scope)
            return

        row = mapper.to_row(record, account_key=account_key, synced_at=utcnow())
        if operation == Operation.UPDATE:
            values = {k: v for k, v in row.items() if k not in scope}
            updated = await self._backend.update(mapper.table, values, filters=scope)
            if updated:
                return
            # A plain insert: an id held by another account raises ConflictError
            logger.debug("Update matched no remote row for %s; inserting", record.id)
            await self._backend.insert(mapper.table, row)
            return
        await self._backend.upsert(mapper.table, [row], on_conflict=ID_COLUMN)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(
        self,
        entity_type: EntityType | str,
        account_key: int,
        options: PullOptions | None = None,
    ) -> PullResult:
        """Fetch one page of the account's rows, mapped to records."""
        return await self._pull(EntityType(entity_type), options or PullOptions(), account_key)

    async def pull_unscoped(
        self,
        entity_type: EntityType | str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> PullResult:
        """Fetch raw rows across all accounts (reporting only)."""
        options = PullOptions(limit=limit, offset=offset)
        return await self._pull(EntityType(entity_type), options, None)

    async def _pull(
        self,
        entity_type: EntityType,
        options: PullOptions,
        account_key: int | None,
    ) -> PullResult:
        if self._backend is None or not self._connectivity.is_online:
            return PullResult(ok=False, error="sync unavailable")
        if self._auth.current.needs_reauth:
            return PullResult(ok=False, error="re-authentication required")

        backend = self._backend
        mapper = get_mapper(entity_type)
        limit = max(1, min(options.limit or self._page_size, self._max_page_size))
        order = mapper.remote_order_column(options.order_by)
        filters = {ACCOUNT_COLUMN: account_key} if account_key is not None else None
        description = f"pull {entity_type} offset={options.offset}"

        try:
            rows = await self._with_retries(
                description,
                lambda: backend.select(
                    mapper.table,
                    filters=filters,
                    order=order,
                    descending=options.descending,
                    limit=limit,
                    offset=options.offset,
                ),
                self._pull_timeout,
            )
            records = [mapper.from_row(row) for row in rows] if account_key is not None else []
        except AuthError as e:
            await self._handle_auth_error(e)
            return PullResult(ok=False, error=str(e))
        except (RemotePermissionError, SchemaError) as e:
            logger.error("Remote rejected %s: %s", description, e)
            return PullResult(ok=False, error=str(e))
        except RemoteError as e:
            logger.warning("Pull %s failed: %s", description, e)
            return PullResult(ok=False, error=str(e))

        logger.debug("Pulled %d %s rows", len(rows), entity_type)
        return PullResult(records=records, rows=rows)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_retries(
        self,
        description: str,
        call: Callable[[], Awaitable[T]],
        timeout: float,
    ) -> T:
        """Race each attempt against ``timeout``; retry transient failures.

        Raises:
            TransientNetworkError: After the last retry failed.
            RemoteError: Non-transient failures, immediately.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(call(), timeout=timeout)
            except (TransientNetworkError, TimeoutError) as e:
                if attempt > self._max_retries:
                    raise TransientNetworkError(
                        f"{description} failed after {attempt} attempts: {str(e) or 'timeout'}"
                    ) from e
                delay = self._retry_base_delay * attempt
                logger.debug(
                    "%s attempt %d failed (%s), retrying in %.1fs",
                    description,
                    attempt,
                    str(e) or "timeout",
                    delay,
                )
                await asyncio.sleep(delay)

    async def _handle_auth_error(self, error: AuthError) -> None:
        logger.warning("Remote rejected session: %s", error)
        await self._identity.invalidate("auth error")
        self._auth.mark_auth_error(str(error))
