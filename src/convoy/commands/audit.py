"""Audit trail command."""

import asyncio
from datetime import datetime

import typer

from ..constants import AUDIT_DEFAULT_LINES, AUDIT_FOLLOW_INTERVAL
from ..core.audit_trail import (
    AuditFilter,
    AuditFollower,
    AuditTrail,
    HostEntries,
    ParsedAuditLine,
    aggregate_entries,
    entries_to_json,
    group_by_host,
    parse_line,
    parse_timestamp,
)
from ..models import AuditStatus
from ..output import OutputContext, get_output_context
from .common import fleet_audit, load_config_or_exit, select_hosts

STATUS_STYLES = {
    AuditStatus.STARTED.value: "blue",
    AuditStatus.SUCCESS.value: "green",
    AuditStatus.FAILED.value: "red",
    AuditStatus.WARNING.value: "yellow",
}


def _parse_date(value: str | None, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO 8601 date: {value}", param_hint=option) from None


def _format(entry: ParsedAuditLine, raw: bool) -> str:
    if raw:
        return entry.raw
    style = STATUS_STYLES.get(entry.status, "white")
    return (
        f"[dim]{entry.timestamp}[/dim] [{style}]{entry.status.upper():<8}[/{style}]"
        f" [cyan]{entry.host}[/cyan] {entry.action}: {entry.message}"
    )


def _print_aggregated(ctx: OutputContext, entries: list[ParsedAuditLine], raw: bool) -> None:
    if not entries:
        ctx.console.print("No audit entries found")
        return
    for entry in entries:
        ctx.console.print(_format(entry, raw), markup=not raw, highlight=False)
    ctx.console.print(f"\n[dim]Total: {len(entries)} entries[/dim]")


def _print_by_host(
    ctx: OutputContext, host_entries: list[HostEntries], entries: list[ParsedAuditLine], raw: bool
) -> None:
    grouped = group_by_host(entries)
    for item in host_entries:
        ctx.console.print(f"\n[bold cyan]{item.host}[/bold cyan]")
        if item.error:
            ctx.console.print(f"  [yellow]Could not read audit trail:[/yellow] {item.error}")
            continue
        shown = grouped.get(item.host, [])
        if not shown:
            ctx.console.print("  No audit entries found")
            continue
        for entry in shown:
            ctx.console.print(f"  {_format(entry, raw)}", markup=not raw, highlight=False)


async def _follow(
    ctx: OutputContext, trail: AuditTrail, lines: int, audit_filter: AuditFilter, raw: bool
) -> None:
    async def fetch() -> list[tuple[str, str]]:
        host_entries = await trail.get_recent_entries(lines)
        return [(item.host, line) for item in host_entries for line in item.lines]

    follower: AuditFollower[tuple[str, str]] = AuditFollower(fetch, AUDIT_FOLLOW_INTERVAL)
    ctx.console.print("[dim]Following audit trail (Ctrl+C to stop)[/dim]")
    async for host, line in follower.stream():
        entry = parse_line(line, host)
        if not audit_filter.matches(entry):
            continue
        assert entry is not None
        if ctx.json_mode:
            ctx.print_json(entry.to_dict())
        else:
            ctx.console.print(_format(entry, raw), markup=not raw, highlight=False)


def audit(
    lines: int = typer.Option(AUDIT_DEFAULT_LINES, "--lines", "-n", min=1, help="Entries per host"),
    action_filter: str | None = typer.Option(None, "--filter", help="Only actions containing this"),
    status: str | None = typer.Option(None, "--status", help="Only entries with this status"),
    since: str | None = typer.Option(None, "--since", help="Only entries at or after (ISO 8601)"),
    until: str | None = typer.Option(None, "--until", help="Only entries at or before (ISO 8601)"),
    raw: bool = typer.Option(False, "--raw", help="Print audit lines as stored"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep polling for new entries"),
    aggregate: bool = typer.Option(
        True, "--aggregate/--by-host", help="Merge hosts chronologically or group per host"
    ),
) -> None:
    """Show the audit trail of the fleet."""
    ctx = get_output_context()
    if json_output:
        ctx.json_mode = True
    if status and status.lower() not in STATUS_STYLES:
        raise typer.BadParameter(
            f"expected one of {', '.join(STATUS_STYLES)}", param_hint="--status"
        )
    audit_filter = AuditFilter(
        action=action_filter,
        status=status,
        since=_parse_date(since, "--since"),
        until=_parse_date(until, "--until"),
    )

    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)

    async def run() -> list[HostEntries] | None:
        async with fleet_audit(config, hosts) as trail:
            if follow:
                await _follow(ctx, trail, lines, audit_filter, raw)
                return None
            return await trail.get_recent_entries(lines)

    try:
        host_entries = asyncio.run(run())
    except KeyboardInterrupt:
        ctx.print("\nStopped following")
        return
    if host_entries is None:
        return

    for item in host_entries:
        if item.error:
            ctx.warn(f"{item.host}: {item.error}")

    entries = aggregate_entries(host_entries, audit_filter)
    if ctx.json_mode:
        ctx.print_json(entries_to_json(entries))
    elif aggregate:
        _print_aggregated(ctx, entries, raw)
    else:
        _print_by_host(ctx, host_entries, entries, raw)
