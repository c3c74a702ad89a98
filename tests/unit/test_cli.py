"""Tests for the tracksync CLI commands."""

from __future__ import annotations

import asyncio
import json
import pathlib

import pytest
from typer.testing import CliRunner

from tests.conftest import make_application
from tracksync.cli._helpers import format_bytes
from tracksync.cli.main import app
from tracksync.core.entities import EntityType
from tracksync.core.record import Operation
from tracksync.core.sync_item import SyncQueueItem
from tracksync.storage.sqlite_store import SQLiteLocalStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Local-only configuration with a temporary database."""
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("TRACKSYNC_DB_PATH", str(db_path))
    monkeypatch.delenv("TRACKSYNC_REMOTE_URL", raising=False)
    monkeypatch.delenv("TRACKSYNC_REMOTE_KEY", raising=False)
    monkeypatch.delenv("TRACKSYNC_SESSION_ID", raising=False)
    return db_path


# ── health ───────────────────────────────────────────────────────────


class TestHealthCommand:
    """Storage and queue health reporting."""

    def test_json(self, cli_env: pathlib.Path) -> None:
        result = runner.invoke(app, ["health", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["healthy"] is True
        assert data["remote_enabled"] is False
        assert data["db_path"] == str(cli_env)
        assert data["queue"]["pending"] == 0

    def test_table(self) -> None:
        result = runner.invoke(app, ["health"])
        assert result.exit_code == 0
        assert "Storage healthy" in result.stdout

    def test_reports_and_clears_sync_failures(self, cli_env: pathlib.Path) -> None:
        asyncio.run(_record_failure(cli_env, "rejected by remote"))

        result = runner.invoke(app, ["health", "--json", "--clear-failures"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        [failure] = data["queue"]["recent_failures"]
        assert failure["error"] == "rejected by remote"
        assert data["queue"]["abandoned"] == 1
        assert data["failures_cleared"] == 1

        after = json.loads(runner.invoke(app, ["health", "--json"]).stdout)
        assert after["queue"]["recent_failures"] == []

    def test_table_lists_failures(self, cli_env: pathlib.Path) -> None:
        asyncio.run(_record_failure(cli_env, "row-level security"))

        result = runner.invoke(app, ["health"])

        assert result.exit_code == 0
        assert "Recent sync failures" in result.stdout


async def _record_failure(db_path: pathlib.Path, error: str) -> None:
    store = SQLiteLocalStore(db_path)
    await store.initialize()
    try:
        record = await store.put(make_application())
        await store.record_sync_failure(SyncQueueItem.create(Operation.CREATE, record), error)
    finally:
        await store.close()


# ── refresh / cache-status ───────────────────────────────────────────


class TestRefreshCommand:
    """Forced refresh without a remote."""

    def test_json_local_only(self) -> None:
        result = runner.invoke(app, ["refresh", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["remote_available"] is False
        assert data["pushed"] == 0

    def test_table_warns_when_unavailable(self) -> None:
        result = runner.invoke(app, ["refresh", "--session-id", "session-alice"])
        assert result.exit_code == 0
        assert "Remote sync unavailable" in result.stdout


class TestCacheStatusCommand:
    """Per-process cache introspection."""

    def test_cold(self) -> None:
        result = runner.invoke(app, ["cache-status", "--json"])
        data = json.loads(result.stdout)
        assert data["size"] == 0
        assert data["hit_rate"] == 0.0

    def test_warm(self) -> None:
        result = runner.invoke(app, ["cache-status", "--warm", "--json"])
        data = json.loads(result.stdout)
        assert data["size"] == len(EntityType)
        assert data["misses"] == len(EntityType)


# ── report / cleanup ─────────────────────────────────────────────────


class TestReportAndCleanup:
    """Admin rollups and maintenance."""

    def test_report_falls_back_to_local(self) -> None:
        result = runner.invoke(app, ["report", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["source"] == "local"
        assert data["total_accounts"] == 0

    def test_cleanup(self) -> None:
        result = runner.invoke(app, ["cleanup", "--days", "7"])
        assert result.exit_code == 0
        assert "analytics_events: 0 removed" in result.stdout
        assert "backups: 0 removed" in result.stdout


class TestFormatBytes:
    def test_units(self) -> None:
        assert format_bytes(512) == "512 B"
        assert format_bytes(2048) == "2.0 KB"
        assert format_bytes(5 * 1024 * 1024) == "5.0 MB"
