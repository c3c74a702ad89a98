"""Local storage: durable store and read cache."""

from tracksync.storage.base import LocalStore, StorageHealth
from tracksync.storage.result_cache import CacheStatus, ResultCache
from tracksync.storage.sqlite_store import SQLiteLocalStore

__all__ = [
    "CacheStatus",
    "LocalStore",
    "ResultCache",
    "SQLiteLocalStore",
    "StorageHealth",
]
