"""Configuration utilities for the immichsync CLI.

This module provides:
- Config file location and JSON persistence
- build_agent_config: Merge file values with command-line overrides
- ConfigWatcher: Reloads watch roots when the config file changes
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from immichsync.core.config import AgentConfig, ConfigurationError, normalize_paths

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "IMMICHSYNC_CONFIG_DIR"


def get_config_dir() -> Path:
    """Get the configuration directory for immichsync.

    Returns:
        Path from $IMMICHSYNC_CONFIG_DIR, or ~/.immichsync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".immichsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config(config_file: Path | None = None) -> dict[str, Any]:
    """Load configuration from config file.

    Raises:
        ConfigurationError: If the file exists but is not a JSON object.
    """
    config_file = config_file or get_config_file()
    if not config_file.exists():
        return {}
    try:
        data = json.loads(config_file.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read config file {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a JSON object")
    return data


def save_config(config: dict[str, Any], config_file: Path | None = None) -> None:
    """Save configuration to config file."""
    config_file = config_file or get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2), encoding="utf-8")


def build_agent_config(
    file_config: dict[str, Any],
    server: str | None = None,
    key: str | None = None,
    paths: Sequence[str] = (),
) -> AgentConfig:
    """Merge file configuration with command-line overrides.

    Command-line values win. The result is not validated.

    Raises:
        ConfigurationError: If the timeout is not a number.
    """
    file_paths = file_config.get("paths") or []
    if isinstance(file_paths, str):
        file_paths = [file_paths]

    try:
        timeout = float(file_config.get("timeout", 30.0))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid timeout: {file_config.get('timeout')!r}") from e

    return AgentConfig(
        server_url=server or file_config.get("server", ""),
        api_key=key or file_config.get("key", ""),
        paths=tuple(Path(p) for p in (paths or file_paths)),
        timeout=timeout,
    )


def to_file_config(config: AgentConfig, base: dict[str, Any] | None = None) -> dict[str, Any]:
    """Convert an AgentConfig back to the config file format."""
    data = dict(base or {})
    data["server"] = config.server_url
    data["key"] = config.api_key
    data["paths"] = [str(p) for p in config.paths]
    return data


class _ConfigFileHandler(FileSystemEventHandler):
    def __init__(self, config_file: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._config_file = config_file
        self._on_change = on_change

    def _is_config(self, path: str | bytes) -> bool:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        return Path(path).absolute() == self._config_file

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ("created", "modified", "moved"):
            return
        dest = getattr(event, "dest_path", "")
        if self._is_config(event.src_path) or (dest and self._is_config(dest)):
            self._on_change()


class ConfigWatcher:
    """Watches the config file and reports changed watch roots.

    Only the paths can change at runtime; a changed server or key is
    logged and takes effect on the next start.
    """

    def __init__(
        self,
        config_file: Path,
        current: AgentConfig,
        on_paths_changed: Callable[[tuple[Path, ...]], None],
    ) -> None:
        """Initialize the watcher.

        Args:
            config_file: Config file to watch.
            current: Configuration the agent is running with.
            on_paths_changed: Called with the new roots when they change.
        """
        self._config_file = Path(config_file).absolute()
        self._current = current
        self._on_paths_changed = on_paths_changed
        self._observer = Observer()
        self._running = False

    @property
    def current(self) -> AgentConfig:
        """Get the configuration last applied."""
        return self._current

    def reload(self) -> bool:
        """Re-read the config file and apply changed paths.

        Returns:
            True if the watch roots changed.
        """
        logger.info("Config file changed: %s", self._config_file)
        try:
            updated = build_agent_config(load_config(self._config_file))
        except ConfigurationError as e:
            logger.warning("Ignoring config change: %s", e)
            return False

        if (updated.server_url, updated.api_key) != (
            self._current.server_url,
            self._current.api_key,
        ):
            logger.warning("Server or key changed in config, restart the agent to apply")

        new_paths = normalize_paths(updated.paths)
        if not new_paths or new_paths == self._current.paths:
            return False

        self._current = self._current.with_paths(new_paths)
        self._on_paths_changed(self._current.paths)
        return True

    def start(self) -> None:
        """Start watching the config file's directory."""
        if self._running:
            return
        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        handler = _ConfigFileHandler(self._config_file, self.reload)
        self._observer.schedule(handler, str(self._config_file.parent), recursive=False)
        self._observer.start()
        self._running = True

    def stop(self) -> None:
        """Stop watching."""
        if not self._running:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False
