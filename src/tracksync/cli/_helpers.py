"""Shared CLI helpers for configuration, service lifecycle and output formatting."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from tracksync.config import Config
from tracksync.sync.service import SyncService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Services opened during a CLI command, closed before the event loop shuts
# down so aiosqlite's worker thread does not outlive the loop.
_active_services: list[SyncService] = []


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def get_config() -> Config:
    """Get configuration from the environment."""
    return Config.from_env()


async def open_service(config: Config | None = None) -> SyncService:
    """Start a SyncService that is closed automatically by run_async."""
    service = SyncService(config or get_config())
    await service.start()
    _active_services.append(service)
    return service


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command with proper service cleanup."""

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            for service in _active_services:
                try:
                    await service.close()
                except Exception:
                    logger.debug("Failed to close service during cleanup", exc_info=True)
            _active_services.clear()
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


def output_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
