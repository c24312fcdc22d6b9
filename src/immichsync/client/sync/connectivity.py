"""Connectivity tracking with tiered backoff.

This module provides:
- ConnectivityMonitor: Connected/Disconnected state machine driven by ping()
- BACKOFF_TIERS: Fixed escalating probe delays (0.5s, 5s, 60s)

While disconnected, a single background probe pings the server, advancing
one tier per consecutive failure and holding the last tier forever. The
first successful probe flips the state back to Connected and posts exactly
one recovery signal on a single-slot channel; the probe then exits.

Startup uses the same schedule, but blocks the caller instead of running
in the background.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING

from immichsync.client.sync.types import ConnectivityState, DepthFunc, SleepFunc

if TYPE_CHECKING:
    from immichsync.client.api import ImmichClient

logger = logging.getLogger(__name__)

BACKOFF_TIERS: tuple[float, ...] = (0.5, 5.0, 60.0)

# Minimum seconds between "still waiting" log lines on the last tier
LOG_INTERVAL = 60.0


class ConnectivityMonitor:
    """Tracks reachability of the server.

    State is guarded by a lock: the watch loop and the probe thread are the
    only writers, and at most one probe thread runs per disconnection.

    Usage:
        monitor = ConnectivityMonitor(client)
        monitor.wait_until_connected()    # startup, blocking

        if not monitor.report_failure():  # after a failed upload
            buffer.enqueue(path)          # probe now runs in background

        if monitor.poll_recovery():       # in the loop
            buffer.drain(...)
    """

    def __init__(
        self,
        client: ImmichClient,
        tiers: tuple[float, ...] = BACKOFF_TIERS,
        sleep: SleepFunc | None = None,
        buffer_depth: DepthFunc | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            client: Client used to ping the server.
            tiers: Delays between consecutive failed probes, in seconds.
            sleep: Sleep function (defaults to an interruptible wait).
            buffer_depth: Returns the number of pending uploads, for logging.
        """
        if not tiers:
            raise ValueError("At least one backoff tier is required")
        self._client = client
        self._tiers = tuple(tiers)
        self._stop_event = threading.Event()
        self._sleep = sleep or self._interruptible_sleep
        self._buffer_depth = buffer_depth

        self._lock = threading.Lock()
        self._state = ConnectivityState.CONNECTED
        self._thread: threading.Thread | None = None
        self._recovered: queue.Queue[bool] = queue.Queue(maxsize=1)

    @property
    def state(self) -> ConnectivityState:
        """Get the current connectivity state."""
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the server is considered reachable."""
        return self.state is ConnectivityState.CONNECTED

    @property
    def probing(self) -> bool:
        """Check if a background probe is running."""
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def set_buffer_depth(self, buffer_depth: DepthFunc) -> None:
        """Set the callable used to report buffer depth in logs."""
        self._buffer_depth = buffer_depth

    def _interruptible_sleep(self, seconds: float) -> None:
        self._stop_event.wait(seconds)

    def _depth(self) -> int:
        return self._buffer_depth() if self._buffer_depth else 0

    # === Probing ===

    def check(self) -> bool:
        """Ping the server once without changing state."""
        return self._client.ping()

    def probe_until_connected(self, probe_first: bool = True) -> bool:
        """Ping on the tiered schedule until the server answers.

        Args:
            probe_first: Ping immediately before the first delay. When False
                the caller's own failed ping counts as the first probe.

        Returns:
            True once a probe succeeds, False if stopped first.
        """
        if probe_first and self._client.ping():
            return True

        tier = 0
        failures = 1
        since_log = LOG_INTERVAL
        last_logged_tier = -1

        while not self._stop_event.is_set():
            delay = self._tiers[tier]
            since_log += delay
            if tier != last_logged_tier or since_log >= LOG_INTERVAL:
                logger.info(
                    "Server unreachable (%d failed probes), retrying in %gs "
                    "[tier %d/%d, %d uploads buffered]",
                    failures,
                    delay,
                    tier + 1,
                    len(self._tiers),
                    self._depth(),
                )
                last_logged_tier = tier
                since_log = 0.0

            self._sleep(delay)
            if self._stop_event.is_set():
                return False

            if self._client.ping():
                logger.info("Server reachable again after %d failed probes", failures)
                return True

            failures += 1
            if tier < len(self._tiers) - 1:
                tier += 1

        return False

    def wait_until_connected(self) -> bool:
        """Block until the server is reachable (startup).

        Returns:
            True once connected, False if stopped first.
        """
        if self.probe_until_connected(probe_first=True):
            with self._lock:
                self._state = ConnectivityState.CONNECTED
            return True
        return False

    def report_failure(self) -> bool:
        """Re-probe after a failed operation.

        If the server still answers, nothing changes. Otherwise the state
        becomes Disconnected and a background probe is started.

        Returns:
            True if the server is still reachable.
        """
        if self._client.ping():
            return True
        self.start_probe()
        return False

    def start_probe(self) -> bool:
        """Enter Disconnected and start the background probe.

        Returns:
            True if a probe was started, False if one is already running.
        """
        with self._lock:
            self._state = ConnectivityState.DISCONNECTED
            if self._thread is not None and self._thread.is_alive():
                return False
            if self._stop_event.is_set():
                return False
            self._thread = threading.Thread(
                target=self._run_probe,
                name="immichsync-probe",
                daemon=True,
            )
            self._thread.start()
        logger.info("Connectivity lost, buffering uploads until the server is back")
        return True

    def _run_probe(self) -> None:
        recovered = self.probe_until_connected(probe_first=False)
        # State, signal and thread slot change together: once Connected is
        # visible the signal is pending, and a new failure can start a probe
        with self._lock:
            self._thread = None
            if not recovered:
                return
            self._state = ConnectivityState.CONNECTED
            try:
                self._recovered.put_nowait(True)
            except queue.Full:
                logger.debug("Recovery signal already pending")

    # === Recovery channel ===

    def poll_recovery(self, timeout: float | None = None) -> bool:
        """Take the pending recovery signal, if any.

        Args:
            timeout: Seconds to wait for a signal (None = don't wait).

        Returns:
            True if a recovery signal was consumed.
        """
        try:
            if timeout is None:
                return self._recovered.get_nowait()
            return self._recovered.get(timeout=timeout)
        except queue.Empty:
            return False

    def stop(self, timeout: float = 5.0) -> None:
        """Stop any running probe."""
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
