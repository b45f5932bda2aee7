"""convoy CLI: fleet deployment orchestrator."""

from pathlib import Path

import typer

from convoy import __version__

from .commands import audit, deploy, init, lock_app, proxy_app, services_app
from .logging import configure_logging
from .output import OutputContext, set_output_context


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"convoy {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="convoy",
    help="Deploy containerized services to a fleet of hosts over SSH",
    no_args_is_help=True,
)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v, -vv)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output in JSON format for automation",
    ),
    no_color: bool = typer.Option(
        False,
        "--no-color",
        help="Disable colored output",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file (default: .convoy/config.toml)",
    ),
    hosts: str | None = typer.Option(
        None,
        "--hosts",
        help="Comma separated host patterns (wildcards allowed)",
    ),
) -> None:
    """convoy - deploy containerized services to a fleet of hosts."""
    console = configure_logging(
        verbosity=verbose,
        quiet=quiet,
        no_color=no_color,
    )
    set_output_context(
        OutputContext(
            console=console,
            json_mode=json_output,
            config_path=config,
            host_patterns=hosts,
        )
    )


app.command()(init)
app.command()(deploy)
app.command()(audit)
app.add_typer(lock_app, name="lock")
app.add_typer(services_app, name="services")
app.add_typer(proxy_app, name="proxy")
