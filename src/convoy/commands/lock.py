"""Deployment lock commands."""

import asyncio

import typer
from rich.table import Table

from ..constants import LOCK_ACQUIRE_TIMEOUT
from ..core.lock_manager import AcquireResult, HostLockStatus, LockStatusSet, ReleaseResult
from ..output import get_output_context
from .common import fleet_lock, load_config_or_exit, select_hosts

lock_app = typer.Typer(help="Deployment lock commands", no_args_is_help=True)


def _since(status: HostLockStatus) -> str:
    if status.record is None or status.record.acquired_at is None:
        return ""
    return status.record.acquired_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def _status_table(statuses: LockStatusSet) -> Table:
    table = Table(title="Deployment lock")
    table.add_column("Host", style="cyan")
    table.add_column("State")
    table.add_column("Acquired by")
    table.add_column("Since")
    table.add_column("Message")
    for status in statuses.hosts:
        if status.record is not None:
            table.add_row(
                status.host,
                "[red]locked[/red]",
                status.record.acquired_by or "",
                _since(status),
                status.record.message or "",
            )
        elif status.error:
            table.add_row(status.host, "[yellow]unknown[/yellow]", "", "", status.error)
        else:
            table.add_row(status.host, "[green]unlocked[/green]", "", "", "")
    return table


@lock_app.command("acquire")
def lock_acquire(
    message: str = typer.Argument(..., help="Reason for holding the lock"),
    force: bool = typer.Option(False, "--force", "-f", help="Override locks held by others"),
    timeout: float = typer.Option(
        LOCK_ACQUIRE_TIMEOUT, "--timeout", help="Seconds each host may take to write the lock"
    ),
) -> None:
    """Acquire the deployment lock on every host."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)

    async def acquire() -> AcquireResult:
        async with fleet_lock(config, hosts) as lock:
            return await lock.acquire(message, force=force, timeout_seconds=timeout)

    result = asyncio.run(acquire())

    if result.conflicts:
        ctx.error(
            "Deployment lock is already held",
            {"hosts": [c.to_dict() for c in result.conflicts]},
        )
        for conflict in result.conflicts:
            record = conflict.record
            assert record is not None
            ctx.print(
                f"   [cyan]{conflict.host}[/cyan]: {record.acquired_by} since {_since(conflict)}"
                f" ({record.message or 'no message'})"
            )
        ctx.print("Use --force to override.", style="dim")
        raise typer.Exit(1)

    if not result.success:
        ctx.error(
            "Failed to acquire deployment lock",
            {
                "failed": {f.host: f.message for f in result.failures},
                "rollback_failed": {f.host: f.message for f in result.suppressed_errors},
            },
        )
        ctx.host_failures("Lock write failed on:", result.failures)
        ctx.host_failures("Rollback failed on (remove manually):", result.suppressed_errors)
        raise typer.Exit(1)

    ctx.success(
        f"Deployment lock acquired on {len(result.locked_hosts)} host(s)",
        {"hosts": result.locked_hosts},
    )


@lock_app.command("release")
def lock_release() -> None:
    """Release the deployment lock on every host that holds it."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)

    async def release() -> ReleaseResult:
        async with fleet_lock(config, hosts) as lock:
            return await lock.release()

    result = asyncio.run(release())

    if not result.was_locked:
        ctx.result({"released": [], "was_locked": False}, "No deployment lock is held")
        return

    ctx.host_failures("Failed to release lock on:", result.failures)
    ctx.result(
        {
            "released": result.released_hosts,
            "failed": {f.host: f.message for f in result.failures},
            "was_locked": True,
        },
        f"[green]Deployment lock released on {len(result.released_hosts)} host(s)[/green]",
    )


def _read_status() -> LockStatusSet:
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)

    async def status() -> LockStatusSet:
        async with fleet_lock(config, hosts) as lock:
            return await lock.status()

    return asyncio.run(status())


@lock_app.command("status")
def lock_status(
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """Show lock state of every host."""
    ctx = get_output_context()
    statuses = _read_status()

    if json_output or ctx.json_mode:
        ctx.print_json(statuses.to_dict())
        return

    ctx.console.print(_status_table(statuses))
    summary = statuses.to_dict()["summary"]
    ctx.console.print(
        f"{summary['total']} host(s): {summary['locked']} locked, {summary['unlocked']} unlocked"
    )


@lock_app.command("show")
def lock_show() -> None:
    """Show full lock details per host."""
    ctx = get_output_context()
    statuses = _read_status()

    if ctx.json_mode:
        ctx.print_json(statuses.to_dict())
        return

    for status in statuses.hosts:
        ctx.console.print(f"\n[bold cyan]{status.host}[/bold cyan]")
        if status.error:
            ctx.console.print(f"  [yellow]Could not read lock:[/yellow] {status.error}")
            continue
        record = status.record
        if record is None:
            ctx.console.print("  [green]Not locked[/green]")
            continue
        ctx.console.print("  [red]Locked[/red]")
        ctx.console.print(f"  Message:     {record.message or '-'}")
        ctx.console.print(f"  Acquired by: {record.acquired_by}")
        ctx.console.print(f"  Acquired at: {_since(status)}")
        ctx.console.print(f"  PID:         {record.pid if record.pid is not None else '-'}")
        ctx.console.print(f"  Version:     {record.version or '-'}")
