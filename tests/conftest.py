"""Pytest configuration and fixtures."""

from __future__ import annotations

import pathlib
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from tracksync.config import Config
from tracksync.core.entities import EntityType
from tracksync.core.record import Record
from tracksync.remote.memory_backend import InMemoryBackend
from tracksync.remote.sync_client import RemoteSyncClient
from tracksync.storage.sqlite_store import SQLiteLocalStore
from tracksync.sync.auth import AuthStateManager
from tracksync.sync.conflict import ConflictResolver
from tracksync.sync.connectivity import ConnectivityMonitor
from tracksync.sync.identity import IdentityResolver
from tracksync.sync.queue import SyncQueue

SESSION_ID = "session-alice"


def make_application(
    company: str = "Acme",
    status: str = "Applied",
    record_id: str | None = None,
    **fields: Any,
) -> Record:
    """Build an application record with sensible defaults."""
    values = {
        "company": company,
        "position": "Engineer",
        "date_applied": "2026-01-15",
        "status": status,
        "type": "Remote",
        **fields,
    }
    return Record.create(EntityType.APPLICATIONS, values, record_id=record_id)


@pytest.fixture
def db_path(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / "tracksync.db"


@pytest_asyncio.fixture
async def store(db_path: pathlib.Path) -> AsyncGenerator[SQLiteLocalStore, None]:
    """Initialized SQLite store in a temporary directory."""
    local = SQLiteLocalStore(db_path)
    await local.initialize()
    yield local
    await local.close()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def auth() -> AuthStateManager:
    """Auth state signed in as SESSION_ID."""
    manager = AuthStateManager()
    manager.sign_in(SESSION_ID)
    return manager


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def identity(
    store: SQLiteLocalStore,
    backend: InMemoryBackend,
    connectivity: ConnectivityMonitor,
) -> IdentityResolver:
    return IdentityResolver(store, backend, connectivity, timeout=1.0)


@pytest.fixture
def client(
    backend: InMemoryBackend,
    identity: IdentityResolver,
    auth: AuthStateManager,
    connectivity: ConnectivityMonitor,
) -> RemoteSyncClient:
    """Sync client with fast timeouts and no retry delay."""
    return RemoteSyncClient(
        backend,
        identity,
        auth,
        connectivity,
        push_timeout=0.5,
        pull_timeout=0.5,
        max_retries=1,
        retry_base_delay=0.0,
    )


@pytest.fixture
def queue(store: SQLiteLocalStore, client: RemoteSyncClient) -> SyncQueue:
    return SyncQueue(store, client, max_retries=3, retry_delay=0.0, min_drain_interval=0.0)


@pytest.fixture
def resolver(store: SQLiteLocalStore, queue: SyncQueue) -> ConflictResolver:
    return ConflictResolver(store, queue)


@pytest.fixture
def config(db_path: pathlib.Path) -> Config:
    """Config tuned for tests: no delays, long periodic interval."""
    return Config(
        db_path=db_path,
        push_timeout=0.5,
        pull_timeout=0.5,
        max_request_retries=1,
        retry_base_delay=0.0,
        queue_retry_delay=0.0,
        drain_interval=3600.0,
        min_drain_interval=0.0,
    )
