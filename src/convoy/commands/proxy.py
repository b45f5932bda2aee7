"""Reverse proxy commands."""

import asyncio

import typer

from ..constants import LOGS_DEFAULT_LINES, PROXY_CONTAINER_NAME
from ..core.plan import build_plan
from ..models import Outcome
from ..output import get_output_context
from ..services.proxy import ProxyCommands
from .common import fleet_session, load_config_or_exit
from .services import print_host_logs

proxy_app = typer.Typer(help="Reverse proxy commands", no_args_is_help=True)


@proxy_app.command("logs")
def proxy_logs(
    lines: int = typer.Option(LOGS_DEFAULT_LINES, "--lines", "-n", min=1, help="Lines per host"),
) -> None:
    """Show recent proxy logs on hosts serving proxied services."""
    ctx = get_output_context()
    config = load_config_or_exit(ctx)
    hosts = build_plan(config, host_patterns=ctx.host_patterns).proxy_hosts
    if not hosts:
        ctx.error("No selected host serves a proxied service")
        raise typer.Exit(1)
    engine = config.builder.engine

    async def read() -> list[Outcome[str]]:
        async with fleet_session(config, hosts) as session:
            return await session.pool.execute_host_operations(
                [
                    (ex.host, lambda ex=ex: ProxyCommands(ex, engine).logs(lines))
                    for ex in session.executors
                ]
            )

    print_host_logs(ctx, PROXY_CONTAINER_NAME, asyncio.run(read()))
