"""Command-line interface for immichsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- run: Watch folders and upload new images to the server
- config: Show the configuration file
- service: Install, remove and control the background user service
"""

from __future__ import annotations

import json

import click

from immichsync.client.cli.config import (
    build_agent_config,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from immichsync.client.cli.run import run
from immichsync.client.cli.service import service
from immichsync.core.config import ConfigurationError


@click.group()
@click.version_option(package_name="immichsync")
def cli() -> None:
    """ImmichSync - upload new photos from local folders to Immich."""


@cli.command("config")
@click.option("--show-key", is_flag=True, help="Print the API key unmasked.")
def config_cmd(show_key: bool) -> None:
    """Show the saved configuration."""
    config_file = get_config_file()
    try:
        data = load_config(config_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if not data:
        click.echo(f"No configuration saved at {config_file}")
        return

    key = str(data.get("key", ""))
    if key and not show_key:
        data["key"] = key[:4] + "*" * max(0, len(key) - 4)
    click.echo(f"# {config_file}")
    click.echo(json.dumps(data, indent=2))


# Agent commands
cli.add_command(run)

# Service commands
cli.add_command(service)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "build_agent_config",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
