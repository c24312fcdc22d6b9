"""Sync engine: reconciliation, watching, buffering and replay.

Architecture:
    ChecksumIndexer → ImmichClient.reconcile → uploads      (startup)
    FileWatcher → inbox → WatchLoop → ImmichClient.upload   (live)
                              │
    ConnectivityMonitor ──────┴─► UploadBuffer.drain          (recovery)

Components:
- **ChecksumIndexer**: Walks watch roots and digests supported files
- **ConnectivityMonitor**: Connected/Disconnected with tiered backoff probes
- **UploadBuffer**: In-memory FIFO of paths seen while disconnected
- **FileWatcher**: watchdog-based recursive watcher feeding the loop
- **WatchLoop**: Single dispatcher deciding upload vs. buffer
- **SyncEngine**: Startup sequence and wiring
"""

from immichsync.client.sync.buffer import (
    MAX_ATTEMPTS_WHILE_REACHABLE,
    DrainResult,
    UploadBuffer,
)
from immichsync.client.sync.connectivity import BACKOFF_TIERS, ConnectivityMonitor
from immichsync.client.sync.engine import ReconcileResult, SyncEngine
from immichsync.client.sync.indexer import ChecksumIndexer, SkippedPath, compute_checksum
from immichsync.client.sync.loop import WatchLoop
from immichsync.client.sync.types import (
    ConnectivityState,
    LoopEvent,
    LoopEventType,
    UploadOutcome,
)
from immichsync.client.sync.watcher import CreatedEventHandler, FileWatcher

__all__ = [
    # Buffer
    "DrainResult",
    "MAX_ATTEMPTS_WHILE_REACHABLE",
    "UploadBuffer",
    # Connectivity
    "BACKOFF_TIERS",
    "ConnectivityMonitor",
    # Engine
    "ReconcileResult",
    "SyncEngine",
    # Indexer
    "ChecksumIndexer",
    "SkippedPath",
    "compute_checksum",
    # Loop
    "WatchLoop",
    # Types
    "ConnectivityState",
    "LoopEvent",
    "LoopEventType",
    "UploadOutcome",
    # Watcher
    "CreatedEventHandler",
    "FileWatcher",
]
