"""Session -> remote account key resolution with a durable cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from tracksync.core.sync_item import AccountIdentity
from tracksync.errors import AuthError, ConflictError, RemoteError
from tracksync.remote.backend import RemoteBackend
from tracksync.remote.mappers import CREATED_AT_COLUMN, EXTERNAL_ID_COLUMN, ID_COLUMN, USERS_TABLE
from tracksync.storage.base import LocalStore
from tracksync.sync.connectivity import ConnectivityMonitor
from tracksync.utils.observers import HandlerSet
from tracksync.utils.timeutils import to_remote_text, utcnow

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps the active session to its remote account key.

    Resolution order: in-memory cache, durable cache, then the remote
    ``users`` table (creating the row on first use). Concurrent resolves
    share one lookup. ``invalidate`` bumps a generation counter so a lookup
    that was in flight when the session changed is not cached.

    ``AuthError`` propagates to the caller; any other remote failure
    resolves to ``None`` ("sync unavailable").
    """

    def __init__(
        self,
        store: LocalStore,
        backend: RemoteBackend | None,
        connectivity: ConnectivityMonitor,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._backend = backend
        self._connectivity = connectivity
        self._timeout = timeout
        self._cached: AccountIdentity | None = None
        self._loaded = False
        self._generation = 0
        self._lock = asyncio.Lock()
        self._handlers = HandlerSet("identity invalidation")

    @property
    def cached(self) -> AccountIdentity | None:
        return self._cached

    def subscribe(self, handler: Callable[[str], None]) -> Callable[[], None]:
        """Register a handler called with the reason whenever the cache is invalidated."""
        return self._handlers.subscribe(handler)

    async def resolve(self, session_id: str | None) -> int | None:
        if not session_id:
            return None

        cached = await self._load_cached()
        if cached is not None:
            if cached.session_id == session_id:
                return cached.account_key
            await self.invalidate("session changed")

        if self._backend is None or not self._connectivity.is_online:
            return None

        async with self._lock:
            # Another resolve may have finished while we waited
            if self._cached is not None and self._cached.session_id == session_id:
                return self._cached.account_key

            generation = self._generation
            try:
                account_key = await asyncio.wait_for(
                    self._lookup_or_create(session_id), timeout=self._timeout
                )
            except AuthError:
                raise
            except (RemoteError, TimeoutError) as e:
                logger.warning("Account lookup failed, sync unavailable: %s", e)
                return None

            if generation != self._generation:
                logger.debug("Identity invalidated during lookup; discarding result")
                return None

            identity = AccountIdentity(session_id=session_id, account_key=account_key)
            await self._store.save_identity(identity)
            self._cached = identity
            logger.debug("Resolved account key %s for session", account_key)
            return account_key

    async def invalidate(self, reason: str = "") -> None:
        """Forget the cached identity (memory and durable)."""
        self._generation += 1
        had_identity = self._cached is not None or not self._loaded
        self._cached = None
        self._loaded = True
        await self._store.clear_identity()
        if had_identity:
            logger.info("Identity cache invalidated: %s", reason or "unspecified")
        self._handlers.publish(reason)

    async def _load_cached(self) -> AccountIdentity | None:
        if not self._loaded:
            self._cached = await self._store.load_identity()
            self._loaded = True
        return self._cached

    async def _lookup_or_create(self, session_id: str) -> int:
        assert self._backend is not None
        rows = await self._backend.select(
            USERS_TABLE, filters={EXTERNAL_ID_COLUMN: session_id}, limit=1
        )
        if rows:
            return int(rows[0][ID_COLUMN])

        try:
            created = await self._backend.insert(
                USERS_TABLE,
                {EXTERNAL_ID_COLUMN: session_id, CREATED_AT_COLUMN: to_remote_text(utcnow())},
            )
        except ConflictError:
            # Another device created the row first; use the winner
            logger.info("Account row created concurrently, re-fetching")
            rows = await self._backend.select(
                USERS_TABLE, filters={EXTERNAL_ID_COLUMN: session_id}, limit=1
            )
            if not rows:
                raise RemoteError("Account row missing after uniqueness conflict") from None
            return int(rows[0][ID_COLUMN])
        return int(created[ID_COLUMN])
