"""Command-line interface for the Monitorly probe."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .agent import run_probe
from .config import DEFAULT_CONFIG_NAME, ConfigError, ProbeConfig, find_config_file
from .settings import settings
from .utils.logger import ProbeLogger, setup_logging
from .version import __version__, check_for_updates, version_info

app = typer.Typer(
    name="monitorly-probe",
    help="Host metrics probe for Monitorly",
    add_completion=False,
)

console = Console()

SECRET_KEYS = ("application_token", "encryption_key")


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def load_config(config: Optional[str]) -> tuple[str, ProbeConfig]:
    """Locate and load the config file, exiting with an error message on failure."""
    try:
        path = find_config_file(config or settings.config_path or DEFAULT_CONFIG_NAME)
        return path, ProbeConfig.from_yaml(path)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    skip_update_check: bool = typer.Option(False, "--skip-update-check", help="Do not check for a newer release at startup"),
):
    """Start collecting and sending metrics."""
    path, probe_config = load_config(config)

    setup_logging(probe_config.logging.file_path)
    logger = ProbeLogger.named("monitorly_probe")
    logger.info(f"Starting {version_info()}")
    logger.info(f"Using config file: {path}")

    run_async(run_probe(
        path,
        probe_config,
        logger,
        check_updates=probe_config.updates.enabled and not skip_update_check,
    ))


@app.command()
def version():
    """Show version information."""
    console.print(version_info())


@app.command("check-update")
def check_update():
    """Check whether a newer release is available."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Checking for updates...", total=None)
        try:
            info = run_async(check_for_updates())
        except Exception as e:
            console.print(f"[red]Error: failed to check for updates: {e}[/red]")
            raise typer.Exit(1)

    if info.update_available:
        console.print(
            f"[yellow]Update available: {info.latest_version} (current {__version__})[/yellow]"
        )
        if info.release_url:
            console.print(f"Release notes: {info.release_url}")
    else:
        console.print(f"[green]monitorly-probe {__version__} is up to date[/green]")


@app.command("show-config")
def show_config(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show the effective configuration with secrets masked."""
    path, probe_config = load_config(config)

    table = Table(title=f"Configuration ({path})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in flatten(probe_config.to_dict()):
        table.add_row(key, mask(key, value))

    console.print(table)


def flatten(data: dict, prefix: str = "") -> list[tuple[str, object]]:
    """Dotted (key, value) pairs for a nested mapping."""
    rows = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(flatten(value, f"{name}."))
        elif isinstance(value, list) and value and isinstance(value[0], dict):
            for i, item in enumerate(value):
                rows.extend(flatten(item, f"{name}[{i}]."))
        else:
            rows.append((name, value))
    return rows


def mask(key: str, value: object) -> str:
    if key.rsplit(".", 1)[-1] in SECRET_KEYS and value:
        return "********"
    return str(value)


if __name__ == "__main__":
    app()
