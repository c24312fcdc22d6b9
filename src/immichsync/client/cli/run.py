"""Run command for the immichsync CLI.

Commands:
- run: Start the agent in the foreground
"""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from types import FrameType

import click

from immichsync.client.cli.config import (
    ConfigWatcher,
    build_agent_config,
    get_config_file,
    load_config,
    save_config,
    to_file_config,
)
from immichsync.core.config import ConfigurationError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Route immichsync log records to stderr and, optionally, a file."""
    package_logger = logging.getLogger("immichsync")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    package_logger.addHandler(stream_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    package_logger.propagate = False


@click.command()
@click.option("--server", help="URL of the Immich server to make API calls to.")
@click.option("--key", help="API key for the server.")
@click.option(
    "--path",
    "paths",
    multiple=True,
    type=click.Path(file_okay=False),
    help="Folder to sync (repeatable).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write logs to this file.",
)
@click.option("--no-save", is_flag=True, help="Do not write the options back to the config file.")
def run(
    server: str | None,
    key: str | None,
    paths: tuple[str, ...],
    verbose: bool,
    log_file: Path | None,
    no_save: bool,
) -> None:
    """Watch folders and upload new images to the server.

    Options given on the command line override the config file and are
    saved to it. Runs until interrupted.
    """
    from immichsync.client.service import AgentService

    configure_logging(verbose, log_file)

    config_file = get_config_file()
    try:
        file_config = load_config(config_file)
        config = build_agent_config(
            file_config, server=server, key=key, paths=[p.strip() for p in paths]
        ).validate()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not no_save:
        try:
            save_config(to_file_config(config, file_config), config_file)
        except OSError as e:
            logger.warning("Could not save config: %s", e)

    service = AgentService(config)
    config_watcher = ConfigWatcher(config_file, config, service.engine.update_roots)

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        service.engine.stop()

    signal.signal(signal.SIGTERM, _handle_signal)

    click.echo(f"Syncing {', '.join(str(p) for p in config.paths)} with {config.server_url}")
    service.start()
    config_watcher.start()

    try:
        while not service.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        click.echo("\nStopping...")
        service.stop()
    finally:
        config_watcher.stop()
