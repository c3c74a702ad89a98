"""tracksync - local-first record storage with background cloud synchronization."""

from tracksync.config import Config
from tracksync.core.entities import EntityType
from tracksync.core.record import Operation, Record
from tracksync.errors import (
    AuthError,
    ConflictError,
    RemoteError,
    RemotePermissionError,
    SchemaError,
    StorageError,
    TrackSyncError,
    TransientNetworkError,
)
from tracksync.storage.sqlite_store import SQLiteLocalStore
from tracksync.sync.service import RefreshReport, SyncService

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "Config",
    # Data model
    "EntityType",
    "Operation",
    "Record",
    # Services
    "RefreshReport",
    "SQLiteLocalStore",
    "SyncService",
    # Errors
    "AuthError",
    "ConflictError",
    "RemoteError",
    "RemotePermissionError",
    "SchemaError",
    "StorageError",
    "TrackSyncError",
    "TransientNetworkError",
    # Version
    "__version__",
]
