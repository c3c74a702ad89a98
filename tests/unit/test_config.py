"""Tests for Config.from_env."""

from __future__ import annotations

import pathlib

import pytest

from tracksync.config import DEFAULT_DB_PATH, Config

_ENV_KEYS = (
    "TRACKSYNC_REMOTE_URL",
    "TRACKSYNC_REMOTE_KEY",
    "TRACKSYNC_DB_PATH",
    "TRACKSYNC_PAGE_SIZE",
    "TRACKSYNC_PUSH_TIMEOUT",
    "TRACKSYNC_RETENTION_DAYS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfigFromEnv:
    """Environment parsing and defaults."""

    def test_defaults(self) -> None:
        config = Config.from_env()
        assert config.db_path == DEFAULT_DB_PATH
        assert config.page_size == 50
        assert config.max_page_size == 1000
        assert config.queue_max_retries == 3
        assert config.retention_days == 30
        assert not config.remote_enabled

    def test_remote_enabled_needs_url_and_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKSYNC_REMOTE_URL", "https://project.example.co")
        assert not Config.from_env().remote_enabled

        monkeypatch.setenv("TRACKSYNC_REMOTE_KEY", "anon-key")
        config = Config.from_env()
        assert config.remote_enabled
        assert config.remote_url == "https://project.example.co"

    def test_blank_values_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKSYNC_REMOTE_URL", "   ")
        monkeypatch.setenv("TRACKSYNC_REMOTE_KEY", "anon-key")
        assert Config.from_env().remote_url is None

    def test_numeric_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKSYNC_PAGE_SIZE", "200")
        monkeypatch.setenv("TRACKSYNC_PUSH_TIMEOUT", "2.5")
        monkeypatch.setenv("TRACKSYNC_RETENTION_DAYS", "7")

        config = Config.from_env()
        assert config.page_size == 200
        assert config.push_timeout == 2.5
        assert config.retention_days == 7

    def test_invalid_numbers_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKSYNC_PAGE_SIZE", "lots")
        monkeypatch.setenv("TRACKSYNC_PUSH_TIMEOUT", "soon")

        config = Config.from_env()
        assert config.page_size == 50
        assert config.push_timeout == 10.0

    def test_db_path(self, monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
        monkeypatch.setenv("TRACKSYNC_DB_PATH", str(tmp_path / "data.db"))
        assert Config.from_env().db_path == tmp_path / "data.db"
