"""Sync engine wiring the agent together.

This module provides:
- SyncEngine: Startup sequence (connectivity, media types, reconciliation)
  followed by the watch loop
- ReconcileResult: Summary of a reconciliation pass

Startup blocks on the connectivity backoff before anything else happens,
since there is nothing useful to do without the server. The watcher is
started before the reconciliation walk so files created during the walk
queue up in the inbox; the loop only starts consuming them once the pass
is finished.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from immichsync.client.api import ImmichClient, ImmichError
from immichsync.client.metadata import extract_metadata
from immichsync.client.sync.buffer import UploadBuffer
from immichsync.client.sync.connectivity import ConnectivityMonitor
from immichsync.client.sync.indexer import ChecksumIndexer
from immichsync.client.sync.loop import WatchLoop
from immichsync.client.sync.types import LoopEvent, SleepFunc, UploadOutcome
from immichsync.client.sync.watcher import FileWatcher
from immichsync.core.config import normalize_paths

if TYPE_CHECKING:
    from immichsync.client.api import SupportedTypeSet
    from immichsync.client.metadata import UploadMetadata
    from immichsync.core.config import AgentConfig

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Summary of a reconciliation pass.

    Attributes:
        indexed: Number of supported files digested.
        accepted: Paths the server asked for.
        rejected: Paths the server already has (or trashed).
        outcomes: What happened to each accepted path.
    """

    indexed: int = 0
    accepted: list[Path] = field(default_factory=list)
    rejected: list[Path] = field(default_factory=list)
    outcomes: dict[Path, UploadOutcome] = field(default_factory=dict)

    @property
    def uploaded(self) -> list[Path]:
        """Get the accepted paths that were uploaded."""
        return [p for p, o in self.outcomes.items() if o is UploadOutcome.UPLOADED]


class SyncEngine:
    """Runs the agent: startup reconciliation, then the watch loop."""

    def __init__(
        self,
        config: AgentConfig,
        client: ImmichClient | None = None,
        watcher: FileWatcher | None = None,
        monitor: ConnectivityMonitor | None = None,
        buffer: UploadBuffer | None = None,
        metadata_of: Callable[[Path], UploadMetadata] = extract_metadata,
        sleep: SleepFunc | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Validated agent configuration.
            client: Remote client (built from config if omitted).
            watcher: File watcher (a watchdog-based one if omitted).
            monitor: Connectivity monitor (built around client if omitted).
            buffer: Upload buffer (a new, empty one if omitted).
            metadata_of: Builds upload metadata for a path.
            sleep: Sleep function for the backoff schedule.
            poll_interval: Seconds the loop waits for events per iteration.
        """
        self._config = config
        self._roots: list[Path] = list(config.paths)
        self._owns_client = client is None
        self._client = client if client is not None else ImmichClient(config)
        self._inbox: queue.Queue[LoopEvent] = (
            watcher.inbox if watcher is not None else queue.Queue()
        )
        self._watcher = watcher if watcher is not None else FileWatcher(self._inbox)
        self._buffer = buffer if buffer is not None else UploadBuffer()
        self._monitor = (
            monitor
            if monitor is not None
            else ConnectivityMonitor(self._client, sleep=sleep)
        )
        self._monitor.set_buffer_depth(lambda: len(self._buffer))
        self._metadata_of = metadata_of
        self._poll_interval = poll_interval

        self._types: SupportedTypeSet | None = None
        self._loop: WatchLoop | None = None
        self._stopping = threading.Event()

    @property
    def roots(self) -> list[Path]:
        """Get the current watch roots."""
        return list(self._roots)

    @property
    def supported_types(self) -> SupportedTypeSet | None:
        """Get the media types fetched at startup."""
        return self._types

    @property
    def monitor(self) -> ConnectivityMonitor:
        """Get the connectivity monitor."""
        return self._monitor

    @property
    def buffer(self) -> UploadBuffer:
        """Get the upload buffer."""
        return self._buffer

    @property
    def loop(self) -> WatchLoop | None:
        """Get the watch loop (available after start_up())."""
        return self._loop

    # === Startup ===

    def start_up(self) -> bool:
        """Wait for the server and fetch supported media types.

        Returns:
            True if ready, False if stopped while waiting.
        """
        logger.info("Connecting to %s", self._config.server_url)
        if not self._monitor.wait_until_connected():
            return False

        self._types = self._client.fetch_supported_types()
        self._loop = WatchLoop(
            client=self._client,
            supported_types=self._types,
            monitor=self._monitor,
            buffer=self._buffer,
            inbox=self._inbox,
            watcher=self._watcher,
            metadata_of=self._metadata_of,
            on_roots_changed=self._apply_roots,
            poll_interval=self._poll_interval,
        )
        return True

    def _watch_directory(self, path: Path) -> None:
        self._watcher.watch(path)

    def reconcile(self, roots: Iterable[Path] | None = None) -> ReconcileResult:
        """Upload every local file the server does not have yet.

        Args:
            roots: Roots to walk (defaults to all watch roots).

        Returns:
            ReconcileResult for the pass.
        """
        if self._loop is None or self._types is None:
            raise RuntimeError("start_up() must succeed before reconcile()")

        roots = list(self._roots if roots is None else roots)
        result = ReconcileResult()

        logger.info("Syncing existing images in %s", ", ".join(str(r) for r in roots))
        indexer = ChecksumIndexer(on_directory=self._watch_directory)
        entries = indexer.index(roots, self._types.is_supported)
        result.indexed = len(entries)

        try:
            decisions = self._client.reconcile(entries)
        except ImmichError as e:
            logger.error("Reconciliation failed, no files accepted this round: %s", e)
            return result

        submitted = {entry.local_id for entry in entries}
        for decision in decisions:
            if decision.local_id not in submitted:
                logger.warning("Ignoring decision for unknown id %s", decision.local_id)
                continue
            if not decision.accepted:
                logger.debug(
                    "Server already has %s (%s%s)",
                    decision.local_id,
                    decision.reason or "rejected",
                    ", trashed" if decision.already_trashed_remotely else "",
                )
                result.rejected.append(decision.local_id)
                continue
            result.accepted.append(decision.local_id)

        for path in result.accepted:
            if self._stopping.is_set():
                break
            result.outcomes[path] = self._loop.upload_or_buffer(path)

        logger.info(
            "Finished syncing existing images: %d indexed, %d new, %d uploaded",
            result.indexed,
            len(result.accepted),
            len(result.uploaded),
        )
        return result

    # === Roots reload ===

    def update_roots(self, paths: Iterable[str | Path]) -> None:
        """Replace the watch roots without restarting.

        Safe to call from any thread: the change is applied by the watch loop.
        """
        self._inbox.put(LoopEvent.roots_changed(normalize_paths(paths)))

    def _apply_roots(self, paths: tuple[Path, ...]) -> None:
        added = [p for p in paths if p not in self._roots]
        removed = [p for p in self._roots if p not in paths]
        self._roots = list(paths)

        for root in removed:
            self._watcher.unwatch(root)
        # A kept root may have been covered by a removed parent
        for root in self._roots:
            if root in added:
                continue
            try:
                self._watcher.watch(root)
            except OSError as e:
                logger.error("Cannot watch %s: %s", root, e)
        if added:
            logger.info("New watch roots: %s", ", ".join(str(p) for p in added))
            self.reconcile(added)

    # === Lifecycle ===

    def run(self) -> None:
        """Run the agent until stop() is called."""
        try:
            if not self.start_up():
                return
            self._watcher.start()
            self.reconcile()
            if self._loop is not None and not self._stopping.is_set():
                self._loop.run()
        finally:
            self.close()

    def stop(self) -> None:
        """Ask the engine to stop.

        The upload in progress, if any, completes or fails first.
        """
        self._stopping.set()
        self._monitor.stop()
        if self._loop is not None:
            self._loop.stop()

    def close(self) -> None:
        """Release the watcher and HTTP client."""
        self._monitor.stop()
        self._watcher.stop()
        if self._owns_client:
            self._client.close()
        if len(self._buffer):
            logger.warning(
                "Exiting with %d buffered files not uploaded", len(self._buffer)
            )
