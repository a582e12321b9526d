"""Shared utilities for gendeploy CLI modules."""
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from gendeploy.models.generation import Generation, GenerationStatus
from gendeploy.models.health import HealthReport

# Default config search paths (ordered by proximity to current run)
CONFIG_PATHS = [
    "./gendeploy.yml",
    str(Path.home() / ".config" / "gendeploy" / "gendeploy.yml"),
    "/etc/gendeploy/gendeploy.yml",
]

STATUS_STYLES = {
    GenerationStatus.ACTIVE: "bold green",
    GenerationStatus.SUPERSEDED: "dim",
    GenerationStatus.BUILDING: "cyan",
    GenerationStatus.FAILED: "red",
    GenerationStatus.ROLLED_BACK: "yellow",
}


def find_config(config_path: Optional[str] = None) -> Optional[str]:
    """Locate the deployment config file, or None to run on built-in defaults."""
    if config_path:
        return config_path

    if env_config := os.environ.get("GENDEPLOY_CONFIG"):
        return env_config

    for path in CONFIG_PATHS:
        if Path(path).exists():
            return path

    return None


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Set up file logging (and console verbosity) for CLI commands."""
    from gendeploy.core.logger import set_verbose
    from gendeploy.core.logger import setup_file_logging as _setup_file_logging

    _setup_file_logging(log_file=log_file, verbose=verbose)
    set_verbose(verbose)


def load_deploy_config(config_path: Optional[str]):
    from gendeploy.config.loader import DeployConfigLoader
    from gendeploy.models.errors import ConfigError

    try:
        return DeployConfigLoader(find_config(config_path)).load()
    except FileNotFoundError as e:
        raise ConfigError(str(e)) from e


def build_orchestrator(config_path: Optional[str], target: str):
    """Load configuration and create an orchestrator for one target.

    Returns:
        Tuple of (deploy_config, orchestrator)
    """
    from gendeploy.core.orchestrator import DeploymentOrchestrator

    deploy_config = load_deploy_config(config_path)
    target_config = deploy_config.target(target)
    orchestrator = DeploymentOrchestrator(target_config, loader=deploy_config.bundle_loader())
    return deploy_config, orchestrator


def confirm_action(message: str, yes_flag: bool = False) -> bool:
    """Prompt user for confirmation unless --yes."""
    if yes_flag:
        return True
    return typer.confirm(message)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: Optional[int] = None,
) -> None:
    """Print an error and exit with the error's own exit code.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Override for the exit code (default: e.exit_code or 1)
    """
    console.print(f"[red]Error:[/red] {e}")
    if verbose:
        console.print_exception()
    if exit_code is None:
        exit_code = getattr(e, "exit_code", 1)
    raise typer.Exit(exit_code)


def generation_table(generations: List[Generation], title: str = "Generations") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right", style="bold")
    table.add_column("Status")
    table.add_column("Bundle")
    table.add_column("Created")
    table.add_column("Activated")

    for generation in generations:
        style = STATUS_STYLES.get(generation.status, "")
        table.add_row(
            str(generation.id),
            f"[{style}]{generation.status.value}[/{style}]" if style else generation.status.value,
            generation.bundle_fingerprint[:12],
            _short_time(generation.created_at),
            _short_time(generation.activated_at),
        )
    return table


def health_table(report: HealthReport) -> Table:
    verdict = "[green]passed[/green]" if report.overall_passed else "[red]failed[/red]"
    table = Table(
        title=f"Health of generation {report.generation_id} ({verdict}, {_short_time(report.checked_at)})",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Probe", style="bold")
    table.add_column("Result")
    table.add_column("Detail", overflow="fold")

    for check in report.checks:
        table.add_row(
            check.name,
            "[green]✓ pass[/green]" if check.passed else "[red]✗ fail[/red]",
            check.detail,
        )
    return table


def describe_generation(generation: Optional[Generation]) -> Tuple[str, str]:
    if generation is None:
        return "-", "none"
    return str(generation.id), f"bundle {generation.bundle_fingerprint[:12]}, {generation.status.value}"


def _short_time(value: Optional[str]) -> str:
    if not value:
        return "-"
    return value.replace("T", " ")[:19]


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    console.print(f"[cyan]{prefix}[/cyan] {message}")
