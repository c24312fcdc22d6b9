"""Service commands for the immichsync CLI.

Commands:
- service install: Install and start the agent as a user service
- service uninstall: Stop and remove the user service
- service start / stop / restart: Control the installed service
- service status: Check whether the service is installed
"""

from __future__ import annotations

import sys

import click

from immichsync.client.service import (
    CONTROL_ACTIONS,
    ServiceError,
    control_service,
    install_service,
    is_installed,
    uninstall_service,
)


@click.group()
def service() -> None:
    """Manage the background user service."""


@service.command()
def install() -> None:
    """Install the agent as a user service.

    The service runs 'immichsync run' with the saved configuration,
    so run the agent once with --server, --key and --path first.
    """
    try:
        if is_installed():
            click.echo("Service is already installed.")
            return
        path = install_service()
        click.echo(f"Service installed: {path}")
    except ServiceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@service.command()
def uninstall() -> None:
    """Stop and remove the user service."""
    try:
        if not is_installed():
            click.echo("Service is not installed.")
            return
        uninstall_service()
        click.echo("Service removed.")
    except ServiceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@service.command()
def status() -> None:
    """Check whether the user service is installed."""
    if is_installed():
        click.echo("Service is installed.")
    else:
        click.echo("Service is not installed.")


def _make_control_command(action: str) -> click.Command:
    @click.command(name=action, help=f"{action.capitalize()} the installed service.")
    def _command() -> None:
        try:
            control_service(action)
        except ServiceError as e:
            click.echo(f"Error: {e}", err=True)
            click.echo(f"Valid actions: {', '.join(CONTROL_ACTIONS)}", err=True)
            sys.exit(1)
        click.echo(f"Service {action} requested.")

    return _command


for _action in CONTROL_ACTIONS:
    service.add_command(_make_control_command(_action))
