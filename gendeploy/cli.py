#!/usr/bin/env python3
"""gendeploy CLI - Generation-based configuration deployment."""

import typer
from rich.console import Console

from gendeploy.cli_deploy_commands import register_deploy_commands
from gendeploy.cli_generation_commands import register_generation_commands
from gendeploy.core.logger import get_logger

app = typer.Typer(
    name="gendeploy",
    help="""gendeploy - Push a configuration bundle, activate it, health check it, roll back if needed

Quick start:
  gendeploy validate ./config              # Check the bundle
  gendeploy deploy ./config web1 --dry-run # See what would happen
  gendeploy deploy ./config web1           # Make it happen
  gendeploy status web1                    # Current generation and health

More commands: gendeploy --help
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

# Attach modular subcommands
register_deploy_commands(app, console)
register_generation_commands(app, console)

if __name__ == "__main__":
    app()
