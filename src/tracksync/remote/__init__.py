"""Remote backend access: HTTP/in-memory backends, row mappers and the sync client."""

from tracksync.remote.backend import HttpBackend, RemoteBackend
from tracksync.remote.mappers import RowMapper, get_mapper
from tracksync.remote.memory_backend import InMemoryBackend

__all__ = [
    "HttpBackend",
    "InMemoryBackend",
    "RemoteBackend",
    "RowMapper",
    "get_mapper",
]
