"""Shared types for the sync components.

This module provides:
- ConnectivityState: Connected / Disconnected
- LoopEventType, LoopEvent: Events consumed by the watch loop
- UploadOutcome: What happened to a path handed to the loop
- Callback type aliases
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path


class ConnectivityState(Enum):
    """Reachability of the server as seen by the agent."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class LoopEventType(Enum):
    """Kinds of events the watch loop dispatches."""

    FILE_CREATED = auto()
    DIRECTORY_CREATED = auto()
    WATCH_ERROR = auto()
    ROOTS_CHANGED = auto()
    STOP = auto()


@dataclass
class LoopEvent:
    """An event consumed by the watch loop.

    Attributes:
        event_type: What happened.
        path: File or directory concerned (FILE_CREATED, DIRECTORY_CREATED).
        paths: New watch roots (ROOTS_CHANGED).
        error: Error raised by the notifier (WATCH_ERROR).
        timestamp: When the event was observed.
    """

    event_type: LoopEventType
    path: Path | None = None
    paths: tuple[Path, ...] = ()
    error: BaseException | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def file_created(cls, path: str | Path) -> LoopEvent:
        return cls(LoopEventType.FILE_CREATED, path=Path(path))

    @classmethod
    def directory_created(cls, path: str | Path) -> LoopEvent:
        return cls(LoopEventType.DIRECTORY_CREATED, path=Path(path))

    @classmethod
    def watch_error(cls, error: BaseException, path: str | Path | None = None) -> LoopEvent:
        return cls(
            LoopEventType.WATCH_ERROR,
            path=Path(path) if path is not None else None,
            error=error,
        )

    @classmethod
    def roots_changed(cls, paths: tuple[Path, ...]) -> LoopEvent:
        return cls(LoopEventType.ROOTS_CHANGED, paths=tuple(paths))

    @classmethod
    def stop(cls) -> LoopEvent:
        return cls(LoopEventType.STOP)


class UploadOutcome(Enum):
    """What happened to a path handed to the loop."""

    UPLOADED = "uploaded"
    BUFFERED = "buffered"
    SKIPPED = "skipped"
    FAILED = "failed"


# Type aliases for callbacks
SleepFunc = Callable[[float], None]
DepthFunc = Callable[[], int]
