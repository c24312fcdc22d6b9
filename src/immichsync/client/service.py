"""Service lifecycle and OS service registration.

This module provides:
- Lifecycle: Minimal start/stop interface the host drives
- AgentService: Runs a SyncEngine in a background thread
- Platform-specific service installation (systemd user unit on Linux,
  launchd agent on macOS)

Service definition:
    Name: immich-sync
    Restarts when the agent exits cleanly, mirroring a supervisor that
    keeps the agent up across server restarts and logouts.
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from immichsync.client.sync.engine import SyncEngine

if TYPE_CHECKING:
    from immichsync.core.config import AgentConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "immich-sync"
SERVICE_DESCRIPTION = "Service that syncs images to an Immich Server."
LAUNCHD_LABEL = "com.immichsync.agent"


class ServiceError(Exception):
    """Raised when service installation or control fails."""


class Lifecycle(Protocol):
    """Start/stop hooks driven by the host (terminal or service manager)."""

    def start(self) -> None: ...

    def stop(self) -> None: ...


class AgentService:
    """Runs the sync engine in a background thread.

    start() returns immediately. stop() lets the upload in progress
    complete or fail, then waits for the engine thread to exit.
    """

    def __init__(self, config: AgentConfig, engine: SyncEngine | None = None) -> None:
        """Initialize the service.

        Args:
            config: Validated agent configuration.
            engine: Engine to run (built from config if omitted).
        """
        self._config = config
        self._engine = engine if engine is not None else SyncEngine(config)
        self._thread: threading.Thread | None = None

    @property
    def engine(self) -> SyncEngine:
        """Get the engine being run."""
        return self._engine

    @property
    def is_running(self) -> bool:
        """Check if the engine thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the engine in the background."""
        if self.is_running:
            return
        if sys.stdin is not None and sys.stdin.isatty():
            logger.info("Running in terminal.")
        else:
            logger.info("Running under service manager.")
        self._thread = threading.Thread(
            target=self._engine.run,
            name="immichsync-engine",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the engine and wait for it to exit."""
        logger.info("Stopping")
        self._engine.stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the engine thread to exit.

        Returns:
            True if the engine has exited.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()


# =============================================================================
# Platform-specific service registration
# =============================================================================


def _get_executable_command() -> list[str]:
    """Get the command that runs the agent in the foreground."""
    if getattr(sys, "frozen", False):
        return [sys.executable, "run"]
    entry_point = shutil.which("immichsync")
    if entry_point:
        return [entry_point, "run"]
    return [sys.executable, "-m", "immichsync.client.cli", "run"]


def systemd_unit_path() -> Path:
    """Get the systemd user unit file path."""
    return Path.home() / ".config" / "systemd" / "user" / f"{SERVICE_NAME}.service"


def launchd_plist_path() -> Path:
    """Get the launchd agent plist path."""
    return Path.home() / "Library" / "LaunchAgents" / f"{LAUNCHD_LABEL}.plist"


def render_systemd_unit(command: list[str]) -> str:
    """Render the systemd user unit for the agent."""
    exec_start = " ".join(f'"{part}"' if " " in part else part for part in command)
    return f"""[Unit]
Description={SERVICE_DESCRIPTION}
After=network-online.target

[Service]
ExecStart={exec_start}
Restart=on-success
SuccessExitStatus=1 2 8 SIGKILL

[Install]
WantedBy=default.target
"""


def render_launchd_plist(command: list[str], log_dir: Path) -> str:
    """Render the launchd agent plist for the agent."""
    arguments = "\n".join(f"        <string>{part}</string>" for part in command)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{LAUNCHD_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
{arguments}
    </array>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <dict>
        <key>SuccessfulExit</key>
        <true/>
    </dict>
    <key>StandardOutPath</key>
    <string>{log_dir / f"{SERVICE_NAME}.out.log"}</string>
    <key>StandardErrorPath</key>
    <string>{log_dir / f"{SERVICE_NAME}.err.log"}</string>
</dict>
</plist>
"""


def _run(command: list[str]) -> None:
    try:
        subprocess.run(command, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise ServiceError(f"Command failed: {' '.join(command)}: {e}") from e


def install_linux() -> Path:
    """Install and enable the systemd user unit.

    Raises:
        ServiceError: If installation fails
    """
    if platform.system() != "Linux":
        raise ServiceError("systemd installation only works on Linux")

    unit = systemd_unit_path()
    try:
        unit.parent.mkdir(parents=True, exist_ok=True)
        unit.write_text(render_systemd_unit(_get_executable_command()))
    except OSError as e:
        raise ServiceError(f"Failed to write {unit}: {e}") from e

    _run(["systemctl", "--user", "daemon-reload"])
    _run(["systemctl", "--user", "enable", "--now", f"{SERVICE_NAME}.service"])
    return unit


def uninstall_linux() -> None:
    """Disable and remove the systemd user unit.

    Raises:
        ServiceError: If removal fails
    """
    if platform.system() != "Linux":
        raise ServiceError("systemd removal only works on Linux")

    unit = systemd_unit_path()
    if unit.exists():
        _run(["systemctl", "--user", "disable", "--now", f"{SERVICE_NAME}.service"])
        unit.unlink()
        _run(["systemctl", "--user", "daemon-reload"])


def install_macos() -> Path:
    """Install and load the launchd agent.

    Raises:
        ServiceError: If installation fails
    """
    if platform.system() != "Darwin":
        raise ServiceError("launchd installation only works on macOS")

    plist = launchd_plist_path()
    log_dir = Path.home() / "Library" / "Logs"
    try:
        plist.parent.mkdir(parents=True, exist_ok=True)
        plist.write_text(render_launchd_plist(_get_executable_command(), log_dir))
    except OSError as e:
        raise ServiceError(f"Failed to write {plist}: {e}") from e

    _run(["launchctl", "load", "-w", str(plist)])
    return plist


def uninstall_macos() -> None:
    """Unload and remove the launchd agent.

    Raises:
        ServiceError: If removal fails
    """
    if platform.system() != "Darwin":
        raise ServiceError("launchd removal only works on macOS")

    plist = launchd_plist_path()
    if plist.exists():
        _run(["launchctl", "unload", "-w", str(plist)])
        plist.unlink()


def install_service() -> Path:
    """Install the agent as a user service for the current platform.

    Returns:
        Path of the written unit/plist file.

    Raises:
        ServiceError: If the platform is unsupported or installation fails
    """
    system = platform.system()
    if system == "Linux":
        return install_linux()
    if system == "Darwin":
        return install_macos()
    raise ServiceError(f"Unsupported platform: {system}")


def uninstall_service() -> None:
    """Remove the agent's user service for the current platform.

    Raises:
        ServiceError: If the platform is unsupported or removal fails
    """
    system = platform.system()
    if system == "Linux":
        uninstall_linux()
    elif system == "Darwin":
        uninstall_macos()
    else:
        raise ServiceError(f"Unsupported platform: {system}")


def is_installed() -> bool:
    """Check if the user service is installed for the current platform."""
    system = platform.system()
    if system == "Linux":
        return systemd_unit_path().exists()
    if system == "Darwin":
        return launchd_plist_path().exists()
    return False


CONTROL_ACTIONS = ("start", "stop", "restart")


def control_service(action: str) -> None:
    """Start, stop or restart the installed user service.

    Raises:
        ServiceError: If the action is unknown, the service is not
            installed, or the service manager refuses
    """
    if action not in CONTROL_ACTIONS:
        raise ServiceError(f"Unknown action {action!r}, valid actions: {', '.join(CONTROL_ACTIONS)}")
    if not is_installed():
        raise ServiceError("Service is not installed")

    system = platform.system()
    if system == "Linux":
        _run(["systemctl", "--user", action, f"{SERVICE_NAME}.service"])
    elif system == "Darwin":
        if action in ("stop", "restart"):
            _run(["launchctl", "stop", LAUNCHD_LABEL])
        if action in ("start", "restart"):
            _run(["launchctl", "start", LAUNCHD_LABEL])
