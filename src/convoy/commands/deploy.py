"""Deploy command implementation."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import typer
from rich.table import Table

from ..core.pipeline import DeploymentPipeline, DeployOptions, PipelineOutcome, PipelineResult
from ..core.plan import DeploymentPlan
from ..errors import LockError
from ..output import OutputContext, get_output_context
from .common import connect_fleet, fleet_lock, load_config_or_exit, select_hosts


def render_plan(ctx: OutputContext, plan: DeploymentPlan) -> None:
    table = Table(title=f"Deployment plan: {plan.project}")
    table.add_column("Service", style="cyan")
    table.add_column("Hosts")
    table.add_column("Source")
    table.add_column("Proxy")
    for service in plan.services:
        table.add_row(
            service.name,
            ", ".join(service.hosts),
            "build" if service.builds else (service.image or ""),
            "yes" if service.proxied else "no",
        )
    ctx.console.print(table)


def _confirm(ctx: OutputContext) -> Callable[[DeploymentPlan], bool]:
    def confirm(plan: DeploymentPlan) -> bool:
        render_plan(ctx, plan)
        return typer.confirm("Proceed with deployment?", default=False)

    return confirm


def render_result(ctx: OutputContext, result: PipelineResult) -> None:
    if ctx.json_mode:
        ctx.print_json(result.to_dict())
        return

    for stage in result.stages:
        ctx.host_failures(f"✗ {stage.stage.value} {stage.label} failed on:", stage.failures)
    for warning in result.warnings:
        ctx.warn(warning)

    if result.outcome == PipelineOutcome.CANCELLED:
        ctx.console.print("[yellow]Deployment cancelled[/yellow]")
    elif result.outcome == PipelineOutcome.FAILED:
        stage = result.failed_stage.value if result.failed_stage else "unknown"
        for error in result.errors:
            ctx.error(f"{stage}: {error}")
    elif result.outcome == PipelineOutcome.PARTIAL:
        ctx.console.print(
            f"[yellow]Deployment of {result.version} finished with "
            f"{len(result.host_failures)} host failure(s)[/yellow]"
        )
    else:
        ctx.console.print(f"[bold green]Deployed {result.version} successfully[/bold green]")


def deploy(
    build: bool = typer.Option(False, "--build", help="Build and push images before deploying"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Build without the layer cache"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    version: str | None = typer.Option(None, "--version", help="Image tag to build or deploy"),
    services: str | None = typer.Option(
        None, "--services", "-s", help="Comma separated service patterns (wildcards allowed)"
    ),
    no_lock: bool = typer.Option(False, "--no-lock", help="Deploy without the deployment lock"),
) -> None:
    """Build (optionally) and roll out services to the fleet."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = select_hosts(config, ctx)

    options = DeployOptions(
        build=build,
        no_cache=no_cache,
        yes=yes,
        version=version,
        service_patterns=services,
        host_patterns=ctx.host_patterns,
    )
    project_root = config.config_path.parent.parent if config.config_path else Path.cwd()
    pipeline = DeploymentPipeline(
        lambda: config,
        connect_fleet,
        confirm=_confirm(ctx),
        project_root=project_root,
    )

    async def run() -> PipelineResult:
        if no_lock:
            return await pipeline.run(options)
        async with fleet_lock(config, hosts) as lock, lock.hold(f"Deploying {config.project.name}"):
            return await pipeline.run(options)

    try:
        result = asyncio.run(run())
    except LockError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None

    render_result(ctx, result)
    if result.exit_code:
        raise typer.Exit(result.exit_code)
