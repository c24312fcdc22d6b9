"""Shared fixtures: scriptable fakes for the server, watcher and clock."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from immichsync.client.api import (
    DEFAULT_SUPPORTED_TYPES,
    ChecksumEntry,
    ReconciliationAction,
    ReconciliationDecision,
    SupportedTypeSet,
)
from immichsync.client.metadata import UploadMetadata
from immichsync.client.sync.indexer import compute_checksum
from immichsync.client.sync.types import LoopEvent


class FakeClient:
    """In-memory stand-in for ImmichClient.

    Pings answer from ping_results in order, then fall back to reachable.
    The server "knows" every checksum it was uploaded, so a second
    reconciliation of the same tree rejects everything.
    """

    def __init__(self) -> None:
        self.ping_results: list[bool] = []
        self.reachable = True
        self.ping_count = 0
        self.supported_types: SupportedTypeSet = DEFAULT_SUPPORTED_TYPES
        self.known_checksums: set[str] = set()
        self.reconcile_error: Exception | None = None
        self.reconcile_calls: list[list[ChecksumEntry]] = []
        self.extra_decisions: list[ReconciliationDecision] = []
        self.upload_attempts: list[Path] = []
        self.uploaded: list[Path] = []
        self._upload_errors: dict[Path, list[Exception]] = {}
        self._lock = threading.Lock()

    def ping(self) -> bool:
        with self._lock:
            self.ping_count += 1
            if self.ping_results:
                return self.ping_results.pop(0)
            return self.reachable

    def fetch_supported_types(self) -> SupportedTypeSet:
        return self.supported_types

    def reconcile(self, entries: list[ChecksumEntry]) -> list[ReconciliationDecision]:
        self.reconcile_calls.append(list(entries))
        if self.reconcile_error is not None:
            raise self.reconcile_error
        decisions = [
            ReconciliationDecision(
                action=(
                    ReconciliationAction.REJECT
                    if entry.digest in self.known_checksums
                    else ReconciliationAction.ACCEPT
                ),
                local_id=entry.local_id,
                reason="duplicate" if entry.digest in self.known_checksums else "",
            )
            for entry in entries
        ]
        return decisions + self.extra_decisions

    def fail_upload(self, path: Path, *errors: Exception) -> None:
        """Make the next uploads of path raise the given errors, in order."""
        self._upload_errors.setdefault(Path(path), []).extend(errors)

    def upload(self, path: Path, metadata: UploadMetadata) -> bytes:
        path = Path(path)
        self.upload_attempts.append(path)
        pending = self._upload_errors.get(path)
        if pending:
            raise pending.pop(0)
        self.uploaded.append(path)
        if path.exists():
            self.known_checksums.add(compute_checksum(path))
        return b'{"id":"asset-1","status":"created"}'

    def close(self) -> None:
        pass


class FakeWatcher:
    """Records watch registrations instead of using watchdog."""

    def __init__(self) -> None:
        self.inbox: queue.Queue[LoopEvent] = queue.Queue()
        self.watched: list[Path] = []
        self.unwatched: list[Path] = []
        self.started = False
        self.stopped = False

    def watch(self, path: Path) -> bool:
        path = Path(path)
        if path in self.watched:
            return False
        self.watched.append(path)
        return True

    def unwatch(self, path: Path) -> bool:
        self.unwatched.append(Path(path))
        return True

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll predicate until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def fake_metadata(path: Path) -> UploadMetadata:
    """Fixed metadata, so tests don't depend on EXIF parsing."""
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    return UploadMetadata(
        device_asset_id=Path(path).stem,
        device_id="TestCam",
        file_created_at=stamp,
        file_modified_at=stamp,
    )


@pytest.fixture
def fake_client() -> FakeClient:
    """Create a reachable fake server."""
    return FakeClient()


@pytest.fixture
def fake_watcher() -> FakeWatcher:
    """Create a fake watcher."""
    return FakeWatcher()


@pytest.fixture
def sleeper() -> RecordingSleep:
    """Create a recording sleep function."""
    return RecordingSleep()


@pytest.fixture
def metadata_of() -> Callable[[Path], UploadMetadata]:
    """Metadata builder that skips EXIF parsing."""
    return fake_metadata


@pytest.fixture
def waiter() -> Callable[..., bool]:
    """Expose wait_until to tests."""
    return wait_until
