"""Pending-upload buffer used while the server is unreachable.

This module provides:
- UploadBuffer: Thread-safe FIFO of local paths awaiting upload
- DrainResult: Outcome of replaying the buffer after recovery

The buffer lives in memory only; its contents are lost on shutdown.

Draining uploads entries strictly in insertion order. An entry leaves the
buffer only once it is uploaded or explicitly dropped with an error log,
so a failure part-way through keeps the unprocessed remainder for the
next recovery.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from immichsync.client.api import FileReadError, ImmichError, TransportError

if TYPE_CHECKING:
    from immichsync.client.api import ImmichClient
    from immichsync.client.metadata import UploadMetadata
    from immichsync.client.sync.connectivity import ConnectivityMonitor

logger = logging.getLogger(__name__)

# Attempts for one entry while the server keeps answering pings
MAX_ATTEMPTS_WHILE_REACHABLE = 3


@dataclass
class DrainResult:
    """Result of a buffer drain.

    Attributes:
        uploaded: Paths uploaded, in order.
        dropped: Paths removed after repeated non-network failures.
        completed: True if the buffer was fully drained.
    """

    uploaded: list[Path] = field(default_factory=list)
    dropped: list[Path] = field(default_factory=list)
    completed: bool = True


class UploadBuffer:
    """FIFO of paths observed while disconnected."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: deque[Path] = deque()

    def enqueue(self, path: str | Path) -> None:
        """Append a path to the end of the buffer."""
        with self._lock:
            self._pending.append(Path(path))
            depth = len(self._pending)
        logger.info("Buffered %s (%d pending)", path, depth)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.snapshot())

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._pending

    def snapshot(self) -> list[Path]:
        """Get a copy of the pending paths in insertion order."""
        with self._lock:
            return list(self._pending)

    def _peek(self) -> Path | None:
        with self._lock:
            return self._pending[0] if self._pending else None

    def _pop(self) -> None:
        with self._lock:
            self._pending.popleft()

    def clear(self) -> None:
        """Remove all pending paths."""
        with self._lock:
            self._pending.clear()

    def drain(
        self,
        client: ImmichClient,
        metadata_of: Callable[[Path], UploadMetadata],
        monitor: ConnectivityMonitor,
        on_uploaded: Callable[[Path, bytes], None] | None = None,
    ) -> DrainResult:
        """Upload every pending path in insertion order.

        On a failed upload the server is re-probed. If it is gone, the monitor
        is back in Disconnected and the rest of the buffer is kept for the
        next recovery. A TransportError from a server that still answers
        pings also keeps the buffer: the monitor is sent back to probing and
        the drain resumes on its next recovery signal. Any other error
        restarts the drain from the first unprocessed entry, and an entry
        failing that way MAX_ATTEMPTS_WHILE_REACHABLE times is dropped with
        an error.

        Args:
            client: Client performing the uploads.
            metadata_of: Builds upload metadata for a path.
            monitor: Connectivity monitor used to re-probe.
            on_uploaded: Called with each uploaded path and response body.

        Returns:
            DrainResult describing what happened.
        """
        result = DrainResult()
        attempts: dict[Path, int] = {}
        total = len(self)
        if total:
            logger.info("Connectivity re-established, uploading %d buffered files", total)

        while True:
            path = self._peek()
            if path is None:
                break

            try:
                body = client.upload(path, metadata_of(path))
            except ImmichError as e:
                if isinstance(e, FileReadError) and not path.exists():
                    logger.error("Dropping buffered %s, file no longer exists: %s", path, e)
                    self._pop()
                    result.dropped.append(path)
                    continue

                logger.warning("Upload of buffered %s failed: %s", path, e)
                if not monitor.report_failure():
                    logger.info(
                        "Server lost again during drain, %d files kept in buffer", len(self)
                    )
                    result.completed = False
                    return result

                if isinstance(e, TransportError):
                    logger.info(
                        "Server reachable but %s did not go through, %d files kept in buffer",
                        path,
                        len(self),
                    )
                    monitor.start_probe()
                    result.completed = False
                    return result

                attempts[path] = attempts.get(path, 0) + 1
                if attempts[path] >= MAX_ATTEMPTS_WHILE_REACHABLE:
                    logger.error(
                        "Dropping buffered %s after %d failed attempts: %s",
                        path,
                        attempts[path],
                        e,
                    )
                    self._pop()
                    result.dropped.append(path)
                continue

            self._pop()
            result.uploaded.append(path)
            if on_uploaded:
                on_uploaded(path, body)

        self.clear()
        logger.info(
            "Buffer drained: %d uploaded, %d dropped",
            len(result.uploaded),
            len(result.dropped),
        )
        return result
