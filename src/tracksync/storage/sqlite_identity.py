"""SQLite identity cache mixin."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING

from tracksync.core.sync_item import AccountIdentity
from tracksync.utils.timeutils import parse_timestamp, to_local_text

if TYPE_CHECKING:
    import aiosqlite


class SQLiteIdentityMixin:
    """Mixin persisting the single session -> account key mapping."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteLocalStore at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _guard(self, operation: str) -> AbstractAsyncContextManager[None]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_identity(self) -> AccountIdentity | None:
        async with self._guard("load_identity"):
            conn = self._ensure_conn()
            async with conn.execute(
                "SELECT session_id, account_key, cached_at FROM account_identity WHERE slot = 1"
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return AccountIdentity(
            session_id=row["session_id"],
            account_key=int(row["account_key"]),
            cached_at=parse_timestamp(row["cached_at"]),
        )

    async def save_identity(self, identity: AccountIdentity) -> None:
        async with self._guard("save_identity"):
            conn = self._ensure_conn()
            await conn.execute(
                """INSERT INTO account_identity (slot, session_id, account_key, cached_at)
                   VALUES (1, ?, ?, ?)
                   ON CONFLICT(slot) DO UPDATE SET
                       session_id = excluded.session_id,
                       account_key = excluded.account_key,
                       cached_at = excluded.cached_at""",
                (identity.session_id, identity.account_key, to_local_text(identity.cached_at)),
            )
            await conn.commit()

    async def clear_identity(self) -> None:
        async with self._guard("clear_identity"):
            conn = self._ensure_conn()
            await conn.execute("DELETE FROM account_identity")
            await conn.commit()
