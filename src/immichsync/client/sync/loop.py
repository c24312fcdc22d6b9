"""Single-threaded dispatcher for watcher events and recovery signals.

This module provides:
- WatchLoop: Consumes LoopEvents from the watcher inbox and recovery
  signals from the connectivity monitor, and drives uploads

Architecture:
    FileWatcher ─► inbox ─┐
                          ├─► WatchLoop ─► ImmichClient
    ConnectivityMonitor ──┘        │
       (recovery signal)           └─► UploadBuffer (while disconnected)

Only this loop uploads, so uploads are never concurrent and happen in the
order files were observed. A pending recovery signal is always handled
before the next file event, so buffered files go out before newer ones.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from immichsync.client.api import ImmichError, TransportError
from immichsync.client.metadata import extract_metadata
from immichsync.client.sync.buffer import DrainResult
from immichsync.client.sync.types import LoopEvent, LoopEventType, UploadOutcome

if TYPE_CHECKING:
    from immichsync.client.api import ImmichClient, SupportedTypeSet
    from immichsync.client.metadata import UploadMetadata
    from immichsync.client.sync.buffer import UploadBuffer
    from immichsync.client.sync.connectivity import ConnectivityMonitor
    from immichsync.client.sync.watcher import FileWatcher

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5

# Uploads remembered for duplicate-event skipping; the oldest are forgotten first
MAX_REMEMBERED_UPLOADS = 10_000


def file_signature(path: Path) -> tuple[int, int] | None:
    """Get (size, mtime_ns) of a file, or None if it cannot be stat'ed."""
    try:
        stat = os.stat(path)
    except OSError:
        return None
    return (stat.st_size, stat.st_mtime_ns)


class WatchLoop:
    """Dispatches file creation events to upload or to the buffer."""

    def __init__(
        self,
        client: ImmichClient,
        supported_types: SupportedTypeSet,
        monitor: ConnectivityMonitor,
        buffer: UploadBuffer,
        inbox: queue.Queue[LoopEvent],
        watcher: FileWatcher | None = None,
        metadata_of: Callable[[Path], UploadMetadata] = extract_metadata,
        on_roots_changed: Callable[[tuple[Path, ...]], None] | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the loop.

        Args:
            client: Client performing uploads.
            supported_types: Extension filter, fixed for the process lifetime.
            monitor: Connectivity state and recovery channel.
            buffer: Paths waiting for the server to come back.
            inbox: Queue the watcher delivers events to.
            watcher: Watcher to register newly created directories with.
            metadata_of: Builds upload metadata for a path.
            on_roots_changed: Applies new watch roots (called in the loop).
            poll_interval: Seconds to wait for an event before re-checking
                the recovery channel.
        """
        self._client = client
        self._types = supported_types
        self._monitor = monitor
        self._buffer = buffer
        self._inbox = inbox
        self._watcher = watcher
        self._metadata_of = metadata_of
        self._on_roots_changed = on_roots_changed
        self._poll_interval = poll_interval

        self._uploaded: OrderedDict[Path, tuple[int, int] | None] = OrderedDict()
        self._stopped = threading.Event()

    @property
    def inbox(self) -> queue.Queue[LoopEvent]:
        """Get the event inbox."""
        return self._inbox

    @property
    def buffer(self) -> UploadBuffer:
        """Get the upload buffer."""
        return self._buffer

    def is_supported(self, path: Path) -> bool:
        """Check a path against the supported image extensions."""
        return self._types.is_supported(path)

    # === Uploads ===

    def record_uploaded(self, path: Path, body: bytes = b"") -> None:
        """Remember a successful upload so a duplicate event can be skipped."""
        path = Path(path)
        self._uploaded[path] = file_signature(path)
        self._uploaded.move_to_end(path)
        while len(self._uploaded) > MAX_REMEMBERED_UPLOADS:
            self._uploaded.popitem(last=False)
        if body:
            logger.info("Uploaded %s: %s", path, body.decode("utf-8", errors="replace"))
        else:
            logger.info("Uploaded %s", path)

    def already_uploaded(self, path: Path) -> bool:
        """Check if this exact file version was uploaded by this process."""
        if path not in self._uploaded:
            return False
        signature = file_signature(path)
        if signature is None:
            del self._uploaded[path]
            return False
        return self._uploaded[path] == signature

    def upload_or_buffer(self, path: Path) -> UploadOutcome:
        """Upload a file now, or buffer it if the server is unreachable.

        Args:
            path: Supported file to upload.

        Returns:
            What happened to the path.
        """
        # Read the state before polling: Connected is only visible once its
        # recovery signal is pending, so a buffer drain always comes first
        while True:
            connected = self._monitor.is_connected
            if self.service_recovery() is None:
                break

        if not connected:
            self._buffer.enqueue(path)
            return UploadOutcome.BUFFERED

        if self.already_uploaded(path):
            logger.debug("Skipping %s, already uploaded", path)
            return UploadOutcome.SKIPPED

        try:
            body = self._client.upload(path, self._metadata_of(path))
        except ImmichError as e:
            logger.error("Upload of %s failed: %s", path, e)
            if not self._monitor.report_failure():
                logger.info("Connectivity lost, storing %s to buffer and retrying", path)
                self._buffer.enqueue(path)
                return UploadOutcome.BUFFERED
            if isinstance(e, TransportError):
                logger.info("Server reachable but upload did not go through, buffering %s", path)
                self._buffer.enqueue(path)
                self._monitor.start_probe()
                return UploadOutcome.BUFFERED
            logger.error(
                "Server still reachable, not retrying %s until the next startup pass",
                path,
            )
            return UploadOutcome.FAILED

        self.record_uploaded(path, body)
        return UploadOutcome.UPLOADED

    # === Recovery ===

    def service_recovery(self) -> DrainResult | None:
        """Drain the buffer if a recovery signal is pending.

        Returns:
            The drain result, or None if no signal was pending.
        """
        if not self._monitor.poll_recovery():
            return None
        return self.handle_recovery()

    def handle_recovery(self) -> DrainResult:
        """Replay the buffer after the server came back."""
        return self._buffer.drain(
            self._client,
            self._metadata_of,
            self._monitor,
            on_uploaded=self.record_uploaded,
        )

    # === Dispatch ===

    def dispatch(self, event: LoopEvent) -> UploadOutcome | None:
        """Handle one event from the inbox.

        Returns:
            For file events, what happened to the file; otherwise None.
        """
        if event.event_type is LoopEventType.FILE_CREATED and event.path is not None:
            if not self.is_supported(event.path):
                logger.debug("Ignoring unsupported file %s", event.path)
                return UploadOutcome.SKIPPED
            logger.info("New file: %s", event.path)
            return self.upload_or_buffer(event.path)

        if event.event_type is LoopEventType.DIRECTORY_CREATED:
            if self._watcher is not None and event.path is not None:
                try:
                    self._watcher.watch(event.path)
                except OSError as e:
                    logger.error("Cannot watch new directory %s: %s", event.path, e)
            return None

        if event.event_type is LoopEventType.WATCH_ERROR:
            logger.error("Watcher error on %s: %s", event.path, event.error)
            return None

        if event.event_type is LoopEventType.ROOTS_CHANGED:
            if self._on_roots_changed is not None:
                self._on_roots_changed(event.paths)
            return None

        if event.event_type is LoopEventType.STOP:
            self._stopped.set()
        return None

    def run_once(self, timeout: float | None = None) -> bool:
        """Handle a pending recovery signal and at most one inbox event.

        Args:
            timeout: Seconds to wait for an event (defaults to poll interval).

        Returns:
            False once a stop event has been handled.
        """
        self.service_recovery()

        try:
            event = self._inbox.get(
                timeout=self._poll_interval if timeout is None else timeout
            )
        except queue.Empty:
            return not self._stopped.is_set()

        self.dispatch(event)
        return not self._stopped.is_set()

    def run(self) -> None:
        """Dispatch events until stop() is called."""
        logger.info("Watching for new files")
        while self.run_once():
            pass
        logger.info("Watch loop stopped (%d files left in buffer)", len(self._buffer))

    def stop(self) -> None:
        """Ask the loop to exit after the event it is handling."""
        self._inbox.put(LoopEvent.stop())
