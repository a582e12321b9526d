"""Deployment CLI commands - deploy, validate."""
import signal
from contextlib import contextmanager
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from gendeploy.core.logger import get_logger
from gendeploy.models.errors import GendeployError
from gendeploy.models.session import DeploymentResult, DeploymentSession

# Module-level console instance (will be set by register function)
console: Console = Console()
logger = get_logger(__name__)

RESULT_STYLES = {
    DeploymentResult.SUCCESS: "bold green",
    DeploymentResult.ROLLED_BACK: "bold yellow",
    DeploymentResult.FAILED: "bold red",
}


@contextmanager
def deferred_interrupt(session: DeploymentSession):
    """Turn Ctrl-C into a cancellation request for the running session.

    Before activation the session stops at its next step; once activation
    has started the request is noted and the session runs to its decision.
    """
    def handler(signum, frame):
        if session.cancel():
            console.print("\n[yellow]Cancelling before activation...[/yellow]")
        else:
            console.print(
                "\n[yellow]Activation in progress; finishing health check and rollback decision first[/yellow]"
            )

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not on the main thread
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def deploy(
    bundle: str = typer.Argument(..., help="Bundle directory to deploy"),
    target: str = typer.Argument(..., help="Target name from config, or [user@]host[:port], or 'local'"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would happen without changing anything"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file (default: /var/log/gendeploy/gendeploy.log)"),
):
    """Deploy a configuration bundle as a new generation.

    Push -> activate -> health check -> confirm or roll back.

    Exit codes: 0 success, 1 rolled back, 2 failed (manual intervention needed).

    Examples:
        gendeploy deploy ./nixos-config web1
        gendeploy deploy ./nixos-config root@10.0.0.5 --dry-run
    """
    from gendeploy.cli_support import (
        build_orchestrator,
        handle_cli_error,
        print_info,
        print_success,
        print_warning,
        setup_file_logging,
    )

    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        _, orchestrator = build_orchestrator(config, target)
        target_config = orchestrator.target

        if dry_run:
            plan = orchestrator.plan(bundle)
            _print_plan(plan, target_config)
            return

        console.print(f"[bold cyan]Deploying {bundle} to {target_config.display_name}[/bold cyan]")
        session = orchestrator.new_session()
        with deferred_interrupt(session):
            orchestrator.deploy(bundle, session=session)
    except GendeployError as e:
        handle_cli_error(e, console, verbose)
        return

    if session.noop:
        print_info(console, f"Generation {session.new_generation_id} already runs this bundle; nothing to do")
    if session.cancel_requested and session.apply_started and not session.noop:
        print_warning(console, "Cancellation was requested after activation started; the session ran to completion")

    result = session.result
    style = RESULT_STYLES[result]
    console.print(f"\n[{style}]Result: {result.value.upper()}[/{style}]")

    if result == DeploymentResult.SUCCESS:
        print_success(console, f"Generation {session.new_generation_id} is active on {target_config.display_name}")
    elif result == DeploymentResult.ROLLED_BACK:
        restored = session.previous_generation_id
        if restored is None:
            print_warning(console, f"Generation {session.new_generation_id} was not activated; no earlier generation to restore")
        else:
            print_warning(console, f"Generation {restored} restored; generation {session.new_generation_id} was not kept")
        if session.error is not None:
            console.print(f"[dim]{session.error}[/dim]")
    else:
        console.print(f"[red]✗ {session.error or 'Deployment failed'}[/red]")
        console.print("[red]Manual intervention is required on the target.[/red]")

    raise typer.Exit(result.exit_code)


def _print_plan(plan, target_config) -> None:
    bundle = plan['bundle']
    current = plan['current']

    console.print(f"\n[bold]Plan for {target_config.display_name}[/bold] [dim](dry run)[/dim]\n")
    console.print(f"  Bundle:      {bundle.short_fingerprint} ({len(bundle)} files, {bundle.total_size} bytes)")
    console.print(f"  Current:     {f'generation {current.id} ({current.bundle_fingerprint[:12]})' if current else 'none'}")
    console.print(f"  Push:        {'yes' if plan['needs_push'] else 'no (already on target)'}")
    if plan['noop']:
        console.print("  Activation:  [green]none, bundle already active[/green]")
    else:
        console.print(f"  Activation:  {target_config.activation_command}")
        console.print(f"  Probes:      {len(plan['probes'])}")
        for probe in plan['probes']:
            console.print(f"    - {probe.name} ({probe.kind.value})")
    console.print("\n[yellow]Dry run - no changes made[/yellow]")


def validate(
    bundle: str = typer.Argument(..., help="Bundle directory"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to gendeploy.yml"),
    show_files: bool = typer.Option(False, "--files", help="List every file in the bundle"),
):
    """Validate a bundle and print its fingerprint."""
    from gendeploy.cli_support import handle_cli_error, load_deploy_config, print_success

    try:
        loader = load_deploy_config(config).bundle_loader()
        loaded = loader.load(bundle)
    except GendeployError as e:
        handle_cli_error(e, console)
        return

    print_success(console, f"Bundle is valid: {len(loaded)} files, {loaded.total_size} bytes")
    console.print(f"  Fingerprint: [bold]{loaded.fingerprint}[/bold]")

    if show_files:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("File")
        table.add_column("Size", justify="right")
        for path in sorted(loaded.files):
            table.add_row(path, str(len(loaded.files[path])))
        console.print(table)


def register_deploy_commands(app: typer.Typer, shared_console: Console):
    """Register deployment commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(deploy)
    app.command()(validate)
