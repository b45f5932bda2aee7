"""Init command implementation."""

import shutil
from pathlib import Path

import typer

from ..config import write_config_template
from ..constants import CONFIG_FILE, CONVOY_DIR
from ..output import get_output_context


def init() -> None:
    """Initialize convoy in the current directory."""
    ctx = get_output_context()

    convoy_dir = Path.cwd() / CONVOY_DIR
    config_path = convoy_dir / CONFIG_FILE

    if not config_path.exists():
        write_config_template(convoy_dir)
        ctx.console.print(f"[green]Created config template:[/green] {config_path}")
    else:
        ctx.console.print(f"[yellow]Config already exists:[/yellow] {config_path}")

    # Validate toolchain
    all_ok = True
    for tool in ("ssh", "git"):
        if shutil.which(tool):
            ctx.console.print(f"[green]✓[/green] {tool}")
        else:
            ctx.console.print(f"[red]✗[/red] {tool}: not found in PATH")
            all_ok = False
    if not (shutil.which("docker") or shutil.which("podman")):
        ctx.console.print("[red]✗[/red] docker/podman: not found in PATH")
        all_ok = False

    if not all_ok:
        ctx.console.print("\n[yellow]Warning: Some tools are missing[/yellow]")
        raise typer.Exit(2)

    ctx.console.print("\n[bold green]convoy initialized successfully![/bold green]")
