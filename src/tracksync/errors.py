"""Error taxonomy for tracksync.

Remote failures are translated into these types at the backend boundary.
Only :class:`StorageError` is ever raised out of a user-facing write; every
:class:`RemoteError` is contained by the sync layer and logged.
"""

from __future__ import annotations

from collections.abc import Sequence


class TrackSyncError(Exception):
    """Base class for all tracksync errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class RemoteError(TrackSyncError):
    """A call to the remote backend failed."""


class TransientNetworkError(RemoteError):
    """Timeout, connection reset or an overloaded backend. Safe to retry."""


class AuthError(RemoteError):
    """The session is invalid or expired. Sync stops until re-authentication."""


class RemotePermissionError(RemoteError):
    """The backend rejected an account-scoped operation."""


class SchemaError(RemoteError):
    """A remote table or column is missing or does not match the mappers."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        columns: Sequence[str] = (),
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.table = table
        self.columns = tuple(columns)


class ConflictError(RemoteError):
    """A uniqueness constraint rejected an insert."""


class StorageError(TrackSyncError):
    """The local durable medium rejected an operation.

    ``code`` is one of ``quota_exceeded``, ``corruption`` or ``unavailable``.
    """

    def __init__(self, message: str, *, code: str = "unavailable", operation: str = "") -> None:
        super().__init__(message, code=code)
        self.operation = operation
