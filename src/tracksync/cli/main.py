"""tracksync CLI entry point."""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from tracksync.cli._helpers import (
    configure_logging,
    format_bytes,
    open_service,
    output_json,
    run_async,
)
from tracksync.core.entities import EntityType
from tracksync.storage.result_cache import CacheStatus
from tracksync.sync.service import RefreshReport

app = typer.Typer(
    name="tracksync",
    help="tracksync - local-first sync maintenance",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Enable debug logging on stderr")
    ] = False,
) -> None:
    configure_logging(verbose)


@app.command()
def refresh(
    session_id: Annotated[
        Optional[str],
        typer.Option(
            "--session-id",
            "-s",
            envvar="TRACKSYNC_SESSION_ID",
            help="Session to sync as (required for remote sync)",
        ),
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Push queued changes and pull every collection now."""

    async def _refresh() -> RefreshReport:
        service = await open_service()
        if session_id:
            await service.sign_in(session_id)
        return await service.force_refresh()

    report = run_async(_refresh())

    if json_output:
        output_json(report.to_dict())
        return

    if not report.remote_available:
        typer.secho(
            "Remote sync unavailable (not configured, offline or signed out).",
            fg=typer.colors.YELLOW,
        )

    table = Table(title="Refresh", title_style="bold cyan", border_style="bright_black")
    table.add_column("Collection", style="bold")
    table.add_column("Pushed", justify="right")
    table.add_column("Retrying", justify="right")
    table.add_column("Abandoned", justify="right")
    table.add_column("Pulled", justify="right")
    table.add_column("Requeued", justify="right")

    drains = {d.entity_type: d for d in report.drains}
    for entity_type, pull in report.pulls.items():
        drain = drains.get(entity_type)
        table.add_row(
            entity_type.value,
            str(drain.confirmed if drain else 0),
            str(drain.retried if drain else 0),
            str(drain.abandoned if drain else 0),
            str(pull.applied),
            str(pull.requeued),
        )
    console.print(table)
    typer.secho(f"{report.pushed} pushed, {report.applied} applied", fg=typer.colors.GREEN)


@app.command("cache-status")
def cache_status(
    warm: Annotated[
        bool, typer.Option("--warm", help="Read every collection once before reporting")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show read-cache statistics."""
    async def _status() -> CacheStatus:
        service = await open_service()
        if warm:
            for entity_type in EntityType:
                await service.list(entity_type, refresh=False)
        return service.cache_status()

    status = run_async(_status())

    if json_output:
        output_json(status.to_dict())
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Entries", f"{status.valid_entries} valid / {status.size} total")
    table.add_row("Capacity", str(status.max_entries))
    table.add_row("TTL", f"{status.ttl_seconds:.0f}s")
    table.add_row("Hit rate", f"{status.hit_rate:.1%}")
    table.add_row("Invalidations", str(status.invalidations))
    console.print(table)


@app.command()
def health(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
    clear_failures: Annotated[
        bool, typer.Option("--clear-failures", help="Empty the sync failure log after reporting")
    ] = False,
) -> None:
    """Probe local storage and the sync queue."""

    async def _health() -> dict[str, object]:
        service = await open_service()
        storage = await service.storage_health()
        queue = await service.queue_status()
        cleared = await service.clear_sync_failures() if clear_failures else 0
        return {
            "healthy": storage.is_healthy,
            "remote_enabled": service.remote_enabled,
            "db_path": str(service.config.db_path),
            "storage": {
                "used_bytes": storage.used_bytes,
                "quota_bytes": storage.quota_bytes,
                "available_bytes": storage.available_bytes,
                "total_errors": storage.total_errors,
                "recent_errors": storage.recent_errors,
                "last_error": storage.last_error,
            },
            "queue": queue.to_dict(),
            "failures_cleared": cleared,
        }

    data = run_async(_health())

    if json_output:
        output_json(data)
        if not data["healthy"]:
            raise typer.Exit(1)
        return

    storage = data["storage"]
    queue = data["queue"]
    assert isinstance(storage, dict) and isinstance(queue, dict)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Database", str(data["db_path"]))
    table.add_row("Remote sync", "enabled" if data["remote_enabled"] else "local-only")
    table.add_row(
        "Storage",
        f"{format_bytes(storage['used_bytes'])} of {format_bytes(storage['quota_bytes'])}",
    )
    table.add_row("Errors (recent/total)", f"{storage['recent_errors']}/{storage['total_errors']}")
    if storage["last_error"]:
        table.add_row("Last error", str(storage["last_error"]))
    table.add_row(
        "Queue",
        f"{queue['pending']} pending, {queue['in_flight']} in flight, "
        f"{queue['abandoned']} abandoned",
    )
    table.add_row("Last drain", str(queue["last_drain_at"] or "never (this process)"))
    table.add_row("Confirmed pushes", str(queue["total_confirmed"]))
    console.print(table)

    failures = queue["recent_failures"]
    if failures:
        failure_table = Table(title="Recent sync failures")
        failure_table.add_column("Failed at", style="dim")
        failure_table.add_column("Record")
        failure_table.add_column("Operation")
        failure_table.add_column("Error", style="red")
        for failure in failures:
            failure_table.add_row(
                failure["failed_at"],
                f"{failure['entity_type']}/{failure['record_id']}",
                failure["operation"],
                failure["error"],
            )
        console.print(failure_table)
    if data["failures_cleared"]:
        typer.echo(f"Cleared {data['failures_cleared']} sync failures")

    if data["healthy"]:
        typer.secho("Storage healthy", fg=typer.colors.GREEN)
    else:
        typer.secho("Storage unhealthy", fg=typer.colors.RED)
        raise typer.Exit(1)


@app.command()
def report(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show cross-account usage rollups (local data when the remote is unreachable)."""

    async def _report() -> dict[str, object]:
        service = await open_service()
        return (await service.admin_report()).to_dict()

    data = run_async(_report())

    if json_output:
        output_json(data)
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    active = data["active_accounts"]
    new = data["new_accounts"]
    retention = data["retention"]
    assert isinstance(active, dict) and isinstance(new, dict) and isinstance(retention, dict)
    table.add_row("Source", str(data["source"]))
    table.add_row("Accounts", str(data["total_accounts"]))
    table.add_row("Active (1d/7d/30d)", f"{active['day']}/{active['week']}/{active['month']}")
    table.add_row("New (1d/7d/30d)", f"{new['day']}/{new['week']}/{new['month']}")
    table.add_row("Applications", str(data["total_applications"]))
    table.add_row(
        "Retention (d1/d7/d30)",
        f"{retention['day1']}% / {retention['day7']}% / {retention['day30']}%",
    )
    console.print(table)
    if data["truncated"]:
        typer.secho("Row limit reached; figures are partial.", fg=typer.colors.YELLOW)


@app.command()
def cleanup(
    days: Annotated[
        Optional[int],
        typer.Option("--days", "-d", help="Prune analytics and sessions older than N days"),
    ] = None,
) -> None:
    """Prune old analytics data and surplus backups."""

    async def _cleanup() -> dict[str, int]:
        service = await open_service()
        return await service.cleanup_old_data(days)

    removed = run_async(_cleanup())
    for name, count in removed.items():
        typer.echo(f"{name}: {count} removed")


if __name__ == "__main__":
    app()
