"""Generation CLI commands - status, rollback, generations, test-connection, version."""
from typing import Optional

import typer
from rich.console import Console

from gendeploy.models.errors import GendeployError
from gendeploy.models.session import DeploymentResult

# Module-level console instance (will be set by register function)
console: Console = Console()


def status(
    target: str = typer.Argument(..., help="Target name or [user@]host[:port]"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
):
    """Show the current and previous generation and the last health report."""
    from gendeploy.cli_support import (
        build_orchestrator,
        describe_generation,
        handle_cli_error,
        health_table,
        print_warning,
    )

    try:
        _, orchestrator = build_orchestrator(config, target)
        info = orchestrator.status()
    except GendeployError as e:
        handle_cli_error(e, console)
        return

    console.print(f"\n[bold cyan]{orchestrator.target.display_name}[/bold cyan]\n")

    current_id, current_desc = describe_generation(info['current'])
    previous_id, previous_desc = describe_generation(info['previous'])
    console.print(f"  Current generation:   [bold]{current_id}[/bold] ({current_desc})")
    console.print(f"  Previous generation:  {previous_id} ({previous_desc})")

    lock = info['lock']
    if lock:
        print_warning(console, f"Deployment in progress (PID {lock['pid']}, since {lock['time']})")

    report = info['last_health']
    if report is None:
        console.print("\n  [dim]No health report recorded[/dim]")
    else:
        console.print()
        console.print(health_table(report))


def rollback(
    target: str = typer.Argument(..., help="Target name or [user@]host[:port]"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file (default: /var/log/gendeploy/gendeploy.log)"),
):
    """Roll the target back to its previous known-good generation."""
    from gendeploy.cli_support import (
        build_orchestrator,
        confirm_action,
        handle_cli_error,
        print_success,
        print_warning,
        setup_file_logging,
    )

    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        _, orchestrator = build_orchestrator(config, target)
        current = orchestrator.store.current()
        previous = orchestrator.store.previous()
        if current is None or previous is None:
            print_warning(console, f"Nothing to roll back on {orchestrator.target.display_name}")
            raise typer.Exit(1)

        if not confirm_action(
            f"Roll {orchestrator.target.display_name} back from generation {current.id} to {previous.id}?",
            yes_flag=yes,
        ):
            print_warning(console, "Cancelled")
            raise typer.Exit(0)

        session = orchestrator.rollback()
    except GendeployError as e:
        handle_cli_error(e, console, verbose)
        return

    if session.result == DeploymentResult.ROLLED_BACK:
        print_success(console, f"Generation {session.previous_generation_id} is active again")
    else:
        console.print(f"[red]✗ {session.error or 'Rollback failed'}[/red]")
        console.print("[red]Manual intervention is required on the target.[/red]")
        raise typer.Exit(session.result.exit_code)


def generations(
    target: str = typer.Argument(..., help="Target name or [user@]host[:port]"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
    limit: int = typer.Option(0, "--limit", "-n", help="Show only the newest N generations"),
):
    """List every generation on a target, newest first."""
    from gendeploy.cli_support import build_orchestrator, generation_table, handle_cli_error, print_warning

    try:
        _, orchestrator = build_orchestrator(config, target)
        listed = orchestrator.store.list()
    except GendeployError as e:
        handle_cli_error(e, console)
        return

    if not listed:
        print_warning(console, f"No generations on {orchestrator.target.display_name}")
        return

    if limit > 0:
        listed = listed[:limit]
    console.print(generation_table(listed, title=f"Generations on {orchestrator.target.display_name}"))


def test_connection(
    target: str = typer.Argument(..., help="Target name or [user@]host[:port]"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
):
    """Check the target is reachable over ssh with key-based auth."""
    from gendeploy.cli_support import build_orchestrator, handle_cli_error, print_error, print_success

    try:
        _, orchestrator = build_orchestrator(config, target)
        reachable = orchestrator.transport.ping()
    except GendeployError as e:
        handle_cli_error(e, console)
        return

    if not reachable:
        print_error(console, f"{orchestrator.target.display_name} answered but could not run commands")
        raise typer.Exit(4)
    print_success(console, f"Connected to {orchestrator.target.display_name}")


def version():
    """Show gendeploy version."""
    from gendeploy import __version__

    console.print(f"[bold cyan]gendeploy[/bold cyan] version [green]{__version__}[/green]")


def register_generation_commands(app: typer.Typer, shared_console: Console):
    """Register generation commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(status)
    app.command()(rollback)
    app.command()(generations)
    app.command("test-connection")(test_connection)
    app.command()(version)
