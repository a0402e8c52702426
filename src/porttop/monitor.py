"""Background scheduling of refreshes and kills for porttop."""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from queue import Empty, Queue

from porttop.config import MonitorConfig
from porttop.coordinator import KillOutcome, RefreshCoordinator
from porttop.errors import RefreshFailed
from porttop.models import AnnotatedRow, ConnectionSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SnapshotUpdate:
    """A snapshot was published (or its highlights were cleared)."""

    snapshot: ConnectionSnapshot


@dataclass(slots=True, frozen=True)
class StatusUpdate:
    """A status line for the presentation layer."""

    message: str
    error: bool = False


MonitorUpdate = SnapshotUpdate | StatusUpdate


@dataclass(slots=True, frozen=True)
class _Refresh:
    pass


@dataclass(slots=True, frozen=True)
class _Kill:
    rows: tuple[AnnotatedRow, ...] = ()
    group_key: str | None = None


@dataclass(slots=True, frozen=True)
class _ClearChanges:
    generation: int


class ConnectionMonitor:
    """
    Connection monitor driving a RefreshCoordinator from background threads.

    A scheduler thread requests a refresh every poll_rate seconds. Requests
    go onto a work queue consumed by a single worker thread, which is the
    only place the coordinator's snapshot and pending set are mutated.
    Results are pushed to a thread-safe Queue for the UI.
    """

    def __init__(
        self,
        update_queue: Queue[MonitorUpdate],
        coordinator: RefreshCoordinator | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        """
        Initialize the ConnectionMonitor.

        Args:
            update_queue: Thread-safe queue to push updates to.
            coordinator: Engine to drive. Built from config if omitted.
            config: Policy values. Defaults to MonitorConfig().
        """
        self._queue = update_queue
        self._config = config or MonitorConfig()
        self._coordinator = coordinator or RefreshCoordinator(config=self._config)
        self._poll_rate = self._config.poll_rate
        self._requests: Queue[_Refresh | _Kill | _ClearChanges | None] = Queue()
        self._stop_event = threading.Event()
        self._auto_refresh = threading.Event()
        if self._config.auto_refresh:
            self._auto_refresh.set()
        self._refresh_queued = False
        self._request_lock = threading.Lock()
        self._scheduler: threading.Thread | None = None
        self._worker: threading.Thread | None = None
        self._timers: list[threading.Timer] = []
        self._timers_lock = threading.Lock()
        self.skipped_refreshes = 0

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self._coordinator

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def auto_refresh(self) -> bool:
        return self._auto_refresh.is_set()

    @auto_refresh.setter
    def auto_refresh(self, enabled: bool) -> None:
        if enabled:
            self._auto_refresh.set()
        else:
            self._auto_refresh.clear()
        logger.info("Auto refresh %s", "enabled" if enabled else "disabled")

    @property
    def is_running(self) -> bool:
        """Check if the monitor threads are running."""
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """Start the worker and scheduler threads and request an initial refresh."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._requests = Queue()
        with self._request_lock:
            self._refresh_queued = False
        self._worker = threading.Thread(
            target=self._work_loop,
            daemon=True,
            name="ConnectionMonitor",
        )
        self._scheduler = threading.Thread(
            target=self._schedule_loop,
            daemon=True,
            name="ConnectionMonitorTimer",
        )
        self._worker.start()
        self._scheduler.start()
        self.request_refresh()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitor threads.

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        self._stop_event.set()
        self._requests.put(None)
        with self._timers_lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
        for thread in (self._scheduler, self._worker):
            if thread is not None:
                thread.join(timeout=timeout)
        self._scheduler = None
        self._worker = None

    def request_refresh(self) -> bool:
        """
        Queue a refresh unless one is already queued or running.

        Returns:
            False when the request was dropped.
        """
        with self._request_lock:
            if self._refresh_queued:
                self.skipped_refreshes += 1
                skipped = self.skipped_refreshes
            else:
                self._refresh_queued = True
                self._requests.put(_Refresh())
                return True
        logger.debug("Refresh still outstanding, skipping (%d skipped)", skipped)
        return False

    def request_kill(self, rows: Sequence[AnnotatedRow]) -> None:
        """Queue termination of the owners of rows."""
        self._requests.put(_Kill(rows=tuple(rows)))

    def request_kill_group(self, group_key: str) -> None:
        """Queue termination of every process in a group."""
        self._requests.put(_Kill(group_key=group_key))

    def _schedule_loop(self) -> None:
        """Timer loop running in the background thread."""
        while not self._stop_event.wait(timeout=self._poll_rate):
            if self._auto_refresh.is_set():
                self.request_refresh()

    def _work_loop(self) -> None:
        """Single consumer of the work queue."""
        while not self._stop_event.is_set():
            try:
                request = self._requests.get(timeout=0.5)
            except Empty:
                continue
            if request is None:
                break
            try:
                self._handle(request)
            except Exception:
                # Keep the loop running whatever a single request does
                logger.exception("Unexpected error handling %s", type(request).__name__)

    def _handle(self, request: _Refresh | _Kill | _ClearChanges) -> None:
        if isinstance(request, _Refresh):
            self._refresh(scheduled=True)
        elif isinstance(request, _Kill):
            self._kill(request)
        elif isinstance(request, _ClearChanges):
            snapshot = self._coordinator.clear_changes(request.generation)
            if snapshot is not None:
                self._queue.put(SnapshotUpdate(snapshot))

    def _refresh(self, scheduled: bool = False) -> None:
        try:
            snapshot = self._coordinator.refresh()
        except RefreshFailed as exc:
            self._queue.put(StatusUpdate(str(exc), error=True))
            return
        finally:
            # New requests are accepted once the tables have been read
            if scheduled:
                with self._request_lock:
                    self._refresh_queued = False
        if snapshot is None:
            return

        self._queue.put(SnapshotUpdate(snapshot))
        if snapshot.verification is not None and not snapshot.verification.is_empty:
            label = "/".join(sorted(self._config.transient_states))
            self._queue.put(StatusUpdate(snapshot.verification.summary(label)))
        else:
            self._queue.put(
                StatusUpdate(f"{snapshot.total} rows, {snapshot.elapsed_ms:.0f} ms")
            )
        if snapshot.has_changes:
            self._schedule_clear(snapshot.generation)

    def _kill(self, request: _Kill) -> None:
        if request.group_key is not None:
            outcome: KillOutcome = self._coordinator.kill_group(request.group_key)
        else:
            outcome = self._coordinator.kill_rows(request.rows)
        self._queue.put(StatusUpdate(outcome.summary(), error=outcome.rejected))
        if not outcome.rejected:
            self._refresh()

    def _schedule_clear(self, generation: int) -> None:
        timer = threading.Timer(
            self._config.highlight_seconds,
            self._requests.put,
            args=(_ClearChanges(generation),),
        )
        timer.daemon = True
        with self._timers_lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()
