"""File system watcher feeding the watch loop.

This module provides:
- CreatedEventHandler: Turns watchdog creation and rename events into LoopEvents
- FileWatcher: Watches any number of roots recursively using watchdog

Watching a directory is idempotent: a directory already covered by a
recursive watch is not scheduled again.
"""

from __future__ import annotations

import logging
import queue
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from immichsync.client.sync.types import LoopEvent

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver, ObservedWatch

logger = logging.getLogger(__name__)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class CreatedEventHandler(FileSystemEventHandler):
    """Forwards file and directory creation events to the loop's inbox.

    A rename reports its destination as created, so files written under a
    temporary name and then moved into place are seen.
    """

    def __init__(self, inbox: queue.Queue[LoopEvent]) -> None:
        """Initialize the handler.

        Args:
            inbox: Queue the watch loop reads from.
        """
        super().__init__()
        self._inbox = inbox

    def dispatch(self, event: FileSystemEvent) -> None:
        """Dispatch an event, reporting handler failures to the loop."""
        try:
            super().dispatch(event)
        except Exception as e:
            logger.exception("Watcher failed handling %s", event)
            self._inbox.put(LoopEvent.watch_error(e, _decode(event.src_path)))

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        path = _decode(event.src_path)
        if isinstance(event, DirCreatedEvent):
            self._inbox.put(LoopEvent.directory_created(path))
        elif isinstance(event, FileCreatedEvent):
            logger.debug("Created: %s", path)
            self._inbox.put(LoopEvent.file_created(path))

    def on_moved(self, event: DirMovedEvent | FileMovedEvent) -> None:
        """Handle moved event."""
        path = _decode(event.dest_path)
        if isinstance(event, DirMovedEvent):
            self._inbox.put(LoopEvent.directory_created(path))
        elif isinstance(event, FileMovedEvent):
            logger.debug("Moved into place: %s", path)
            self._inbox.put(LoopEvent.file_created(path))


class FileWatcher:
    """Watches directories recursively for new files."""

    def __init__(
        self,
        inbox: queue.Queue[LoopEvent],
        observer: BaseObserver | None = None,
    ) -> None:
        """Initialize the file watcher.

        Args:
            inbox: Queue the watch loop reads from.
            observer: watchdog observer (defaults to the platform observer).
        """
        self._inbox = inbox
        self._handler = CreatedEventHandler(inbox)
        self._observer: BaseObserver = observer if observer is not None else Observer()
        self._watches: dict[Path, ObservedWatch] = {}
        self._running = False

    @property
    def inbox(self) -> queue.Queue[LoopEvent]:
        """Get the queue events are delivered to."""
        return self._inbox

    @property
    def watched(self) -> list[Path]:
        """Get the directories with their own recursive watch."""
        return list(self._watches)

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def covers(self, path: Path) -> bool:
        """Check if a directory is already under a recursive watch."""
        path = Path(path).absolute()
        return any(path == root or root in path.parents for root in self._watches)

    def watch(self, path: str | Path) -> bool:
        """Watch a directory and everything below it.

        Args:
            path: Directory to watch.

        Returns:
            True if a new watch was scheduled, False if already covered.

        Raises:
            NotADirectoryError: If path is not a directory.
            OSError: If the platform refuses the watch.
        """
        path = Path(path).absolute()
        if self.covers(path):
            return False
        if not path.is_dir():
            raise NotADirectoryError(f"Watch path must be a directory: {path}")

        # Subtrees already watched on their own are now redundant
        for root in [r for r in self._watches if path in r.parents]:
            self._observer.unschedule(self._watches.pop(root))

        self._watches[path] = self._observer.schedule(self._handler, str(path), recursive=True)
        logger.info("Watching %s", path)
        return True

    def unwatch(self, path: str | Path) -> bool:
        """Stop watching a directory previously passed to watch().

        Returns:
            True if a watch was removed.
        """
        watch = self._watches.pop(Path(path).absolute(), None)
        if watch is None:
            return False
        self._observer.unschedule(watch)
        logger.info("Stopped watching %s", path)
        return True

    def start(self) -> None:
        """Start delivering events."""
        if self._running:
            return
        self._observer.start()
        self._running = True

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
