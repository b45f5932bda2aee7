"""Service maintenance commands: prune, remove and logs."""

import asyncio
from collections.abc import Sequence

import typer
from rich.rule import Rule

from ..config import ContainerEngine, filter_by_patterns
from ..constants import DEFAULT_RETAIN_IMAGES, LOGS_DEFAULT_LINES
from ..core.plan import DeploymentPlan, build_plan
from ..errors import LockError
from ..models import AuditEntry, AuditStatus, Err, Ok, Outcome, partition
from ..output import OutputContext, get_output_context
from ..services.containers import ContainerDeployer, container_name
from ..services.proxy import ProxyCommands
from ..services.prune import ImagePruner, PruneResult
from .common import FleetSession, fleet_session, load_config_or_exit, select_hosts

services_app = typer.Typer(help="Service maintenance commands", no_args_is_help=True)


def print_host_logs(ctx: OutputContext, title: str, outcomes: Sequence[Outcome[str]]) -> None:
    """Print log output per host, or a JSON object keyed by host."""
    oks, failures = partition(outcomes)
    if ctx.json_mode:
        ctx.print_json(
            {
                "logs": {ok.host: ok.value for ok in oks},
                "failed": {err.host: err.message for err in failures},
            }
        )
    else:
        for ok in oks:
            ctx.console.print(Rule(f"{title} on {ok.host}"))
            ctx.console.print(ok.value.rstrip(), markup=False, highlight=False)
        ctx.host_failures("Failed to read logs on:", failures)
    if failures:
        raise typer.Exit(1)


@services_app.command("prune")
def services_prune(
    retain: int | None = typer.Option(
        None,
        "--retain",
        "-r",
        min=0,
        help="Images to keep per service (default: largest configured retain)",
    ),
) -> None:
    """Remove old service images from every host."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)
    if retain is None:
        retain = build_plan(config).retain or DEFAULT_RETAIN_IMAGES
    engine = config.builder.engine
    project = config.project.name

    async def prune() -> list[Outcome[PruneResult]]:
        async with fleet_session(config, hosts) as session:
            outcomes: list[Outcome[PruneResult]] = await session.pool.execute_host_operations(
                [
                    (ex.host, lambda ex=ex: ImagePruner(ex, engine, project).prune(retain))
                    for ex in session.executors
                ]
            )
            for outcome in outcomes:
                if isinstance(outcome, Ok) and outcome.value.removed:
                    await session.audit.log(
                        AuditEntry(
                            status=AuditStatus.SUCCESS,
                            action="image_prune",
                            message=f"Removed {len(outcome.value.removed)} old image(s)",
                            details={"retain": retain},
                        ),
                        hosts=[outcome.host],
                    )
            return outcomes

    oks, failures = partition(asyncio.run(prune()))
    if ctx.json_mode:
        ctx.print_json(
            {
                "retain": retain,
                "removed": {ok.host: ok.value.removed for ok in oks},
                "failed": {err.host: err.message for err in failures},
            }
        )
    else:
        for ok in oks:
            removed = len(ok.value.removed)
            ctx.console.print(f"   [cyan]{ok.host}[/cyan]: {removed} image(s) removed")
        ctx.host_failures("Prune failed on:", failures)
        total = sum(len(ok.value.removed) for ok in oks)
        ctx.console.print(f"[green]Pruned {total} image(s) on {len(oks)} host(s)[/green]")
    if failures:
        raise typer.Exit(1)


async def _remove_services(
    session: FleetSession, plan: DeploymentPlan, proxied: set[str], engine: ContainerEngine
) -> dict[str, list[Outcome[bool]]]:
    results: dict[str, list[Outcome[bool]]] = {}
    for service in plan.services:
        name = container_name(plan.project, service.name)

        async def remove(host: str, name: str = name) -> bool:
            executor = session.executor(host)
            if host in proxied:
                await ProxyCommands(executor, engine).remove_service(name)
            return await ContainerDeployer(executor, engine).remove(name)

        outcomes = await session.pool.execute_host_operations(
            [(h, lambda h=h: remove(h)) for h in service.hosts]
        )
        for outcome in outcomes:
            if isinstance(outcome, Err):
                entry = AuditEntry(
                    status=AuditStatus.FAILED, action="service_remove", message=outcome.message
                )
            elif outcome.value:
                entry = AuditEntry(
                    status=AuditStatus.SUCCESS,
                    action="service_remove",
                    message=f"Removed {name}",
                )
            else:
                continue
            await session.audit.log(entry, hosts=[outcome.host])
        results[service.name] = outcomes
    return results


@services_app.command("remove")
def services_remove(
    services: str = typer.Argument(..., help="Comma separated service patterns"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    no_lock: bool = typer.Option(False, "--no-lock", help="Remove without the deployment lock"),
) -> None:
    """Stop and remove service containers on their hosts."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)
    plan = build_plan(config, services, ctx.host_patterns)
    if plan.empty:
        ctx.error("No services or hosts match the given filters")
        raise typer.Exit(1)

    names = ", ".join(s.name for s in plan.services)
    if not yes and not typer.confirm(f"Remove {names} from {len(plan.hosts)} host(s)?"):
        ctx.print("Removal cancelled", style="yellow")
        return

    async def run() -> dict[str, list[Outcome[bool]]]:
        async with fleet_session(config, hosts) as session:
            proxied = set(plan.proxy_hosts)
            engine = config.builder.engine
            if no_lock:
                return await _remove_services(session, plan, proxied, engine)
            async with session.lock().hold(f"Removing {names}"):
                return await _remove_services(session, plan, proxied, engine)

    try:
        results = asyncio.run(run())
    except LockError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    any_failed = False
    data = {}
    for service, outcomes in results.items():
        oks, failures = partition(outcomes)
        removed = [ok.host for ok in oks if ok.value]
        absent = [ok.host for ok in oks if not ok.value]
        data[service] = {
            "removed": removed,
            "absent": absent,
            "failed": {err.host: err.message for err in failures},
        }
        any_failed = any_failed or bool(failures)
        if not ctx.json_mode:
            ctx.console.print(f"[green]{service}: removed from {len(removed)} host(s)[/green]")
            if absent:
                ctx.print(f"   not present on: {', '.join(absent)}", style="dim")
            ctx.host_failures(f"{service}: removal failed on:", failures)
    if ctx.json_mode:
        ctx.print_json({"services": data})
    if any_failed:
        raise typer.Exit(1)


@services_app.command("logs")
def services_logs(
    service: str = typer.Argument(..., help="Service name"),
    lines: int = typer.Option(LOGS_DEFAULT_LINES, "--lines", "-n", min=1, help="Lines per host"),
) -> None:
    """Show recent container logs of a service on each of its hosts."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    if service not in config.services:
        ctx.error(f"Unknown service: {service}")
        raise typer.Exit(1)
    hosts = filter_by_patterns(config.services[service].hosts, ctx.host_patterns)
    if not hosts:
        ctx.error(f"No hosts of {service} match the --hosts filter")
        raise typer.Exit(1)
    name = container_name(config.project.name, service)
    engine = config.builder.engine

    async def read() -> list[Outcome[str]]:
        async with fleet_session(config, hosts) as session:
            return await session.pool.execute_host_operations(
                [
                    (ex.host, lambda ex=ex: ContainerDeployer(ex, engine).logs(name, lines))
                    for ex in session.executors
                ]
            )

    print_host_logs(ctx, name, asyncio.run(read()))
