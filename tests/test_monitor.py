"""Tests for the ConnectionMonitor class."""

import threading
import time
from queue import Empty, Queue

import pytest

from porttop.config import MonitorConfig
from porttop.coordinator import RefreshCoordinator
from porttop.monitor import ConnectionMonitor, MonitorUpdate, SnapshotUpdate, StatusUpdate
from porttop.resolver import ProcessResolver

from conftest import StubTableSource, StubTerminator, tcp


def next_snapshot(queue: Queue, timeout: float = 2.0) -> SnapshotUpdate:
    """Skip status updates until a snapshot arrives."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError("No snapshot received")
        update = queue.get(timeout=remaining)
        if isinstance(update, SnapshotUpdate):
            return update


def next_status(queue: Queue, timeout: float = 2.0) -> StatusUpdate:
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError("No status received")
        update = queue.get(timeout=remaining)
        if isinstance(update, StatusUpdate):
            return update


@pytest.fixture
def make_monitor(processes):
    monitors = []

    def factory(source=None, terminator=None, **config_values):
        config_values.setdefault("poll_rate", 0.1)
        config = MonitorConfig(log_file=None, **config_values)
        coordinator = RefreshCoordinator(
            source=source or StubTableSource([tcp(80, 100)]),
            terminator=terminator or StubTerminator(),
            config=config,
            resolver_factory=lambda: ProcessResolver(lookup=processes),
        )
        queue: Queue[MonitorUpdate] = Queue()
        monitor = ConnectionMonitor(queue, coordinator=coordinator, config=config)
        monitors.append(monitor)
        return monitor, queue

    yield factory
    for monitor in monitors:
        monitor.stop()


class TestConnectionMonitor:
    """Tests for ConnectionMonitor class."""

    def test_monitor_creation(self, make_monitor):
        """Test ConnectionMonitor can be created."""
        monitor, _ = make_monitor(poll_rate=5.0)
        assert monitor.poll_rate == 5.0
        assert monitor.auto_refresh
        assert not monitor.is_running

    def test_default_poll_rate(self):
        """Test default poll rate is 5 seconds."""
        queue: Queue[MonitorUpdate] = Queue()
        monitor = ConnectionMonitor(queue, coordinator=RefreshCoordinator(source=StubTableSource()))
        assert monitor.poll_rate == 5.0

    def test_poll_rate_minimum(self, make_monitor):
        """Test poll rate has minimum of 0.1 seconds."""
        monitor, _ = make_monitor()
        monitor.poll_rate = 0.01
        assert monitor.poll_rate >= 0.1

    def test_monitor_start_stop(self, make_monitor):
        """Test monitor can start and stop."""
        monitor, _ = make_monitor()
        monitor.start()
        assert monitor.is_running
        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self, make_monitor):
        """Test starting twice keeps the same worker."""
        monitor, _ = make_monitor()
        monitor.start()
        thread1 = monitor._worker
        monitor.start()
        assert monitor._worker is thread1

    def test_daemon_threads(self, make_monitor):
        """Test monitor threads are daemons."""
        monitor, _ = make_monitor()
        monitor.start()
        assert monitor._worker.daemon is True
        assert monitor._worker.name == "ConnectionMonitor"
        assert monitor._scheduler.daemon is True

    def test_initial_refresh_on_start(self, make_monitor):
        """Test a refresh is published right after start."""
        monitor, queue = make_monitor(auto_refresh=False)
        monitor.start()
        update = next_snapshot(queue)
        assert update.snapshot.total == 1

    def test_auto_refresh_keeps_polling(self, make_monitor):
        """Test the scheduler keeps requesting refreshes."""
        source = StubTableSource([tcp(80, 100)])
        monitor, queue = make_monitor(source=source)
        monitor.start()
        next_snapshot(queue)
        next_snapshot(queue)
        next_snapshot(queue)
        assert source.reads >= 3

    def test_auto_refresh_disabled(self, make_monitor):
        """Test no scheduled refresh while auto refresh is off."""
        source = StubTableSource([tcp(80, 100)])
        monitor, queue = make_monitor(source=source, auto_refresh=False)
        monitor.start()
        next_snapshot(queue)
        time.sleep(0.4)
        assert source.reads == 1

    def test_toggle_auto_refresh(self, make_monitor):
        """Test auto refresh can be switched at runtime."""
        monitor, _ = make_monitor()
        monitor.auto_refresh = False
        assert not monitor.auto_refresh
        monitor.auto_refresh = True
        assert monitor.auto_refresh

    def test_failure_does_not_stop_the_loop(self, make_monitor):
        """Test a failed refresh is reported and polling continues."""
        source = StubTableSource([tcp(80, 100)])
        source.fail = True
        monitor, queue = make_monitor(source=source)
        monitor.start()

        status = next_status(queue)
        assert status.error
        assert "table query failed" in status.message

        source.fail = False
        assert next_snapshot(queue).snapshot.total == 1
        assert monitor.is_running

    def test_busy_refresh_requests_are_dropped(self, make_monitor):
        """Test requests during a running refresh are dropped and counted."""
        source = StubTableSource([tcp(80, 100)])
        source.gate = threading.Event()
        monitor, queue = make_monitor(source=source, auto_refresh=False)
        monitor.start()
        assert source.entered.wait(timeout=2.0)

        assert monitor.request_refresh() is False
        assert monitor.request_refresh() is False
        assert monitor.skipped_refreshes == 2

        source.gate.set()
        next_snapshot(queue)
        time.sleep(0.2)
        assert source.reads == 1

    def test_concurrent_refresh_requests_queue_one(self, make_monitor):
        """Racing callers queue exactly one refresh and count every other one."""
        monitor, _ = make_monitor(auto_refresh=False)
        callers = 16
        barrier = threading.Barrier(callers)
        results = []
        results_lock = threading.Lock()

        def request():
            barrier.wait()
            accepted = monitor.request_refresh()
            with results_lock:
                results.append(accepted)

        threads = [threading.Thread(target=request) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=2.0)

        assert results.count(True) == 1
        assert monitor.skipped_refreshes == callers - 1
        assert monitor._requests.qsize() == 1

    def test_changes_are_cleared_after_highlight_window(self, make_monitor):
        """Test highlights are cleared after highlight_seconds."""
        source = StubTableSource([tcp(80, 100)])
        monitor, queue = make_monitor(source=source, auto_refresh=False, highlight_seconds=0.2)
        monitor.start()
        next_snapshot(queue)

        source.tcp_records = [tcp(80, 100), tcp(81, 100)]
        monitor.request_refresh()
        highlighted = next_snapshot(queue).snapshot
        assert highlighted.has_changes

        cleared = next_snapshot(queue).snapshot
        assert cleared.generation == highlighted.generation
        assert not cleared.has_changes

    def test_kill_request_reports_and_refreshes(self, make_monitor):
        """Test a kill reports its result and verifies on the next refresh."""
        source = StubTableSource([tcp(80, 100), tcp(81, 200)])
        terminator = StubTerminator()
        monitor, queue = make_monitor(source=source, terminator=terminator, auto_refresh=False)
        monitor.start()
        snapshot = next_snapshot(queue).snapshot
        next_status(queue)

        source.tcp_records = [tcp(81, 200)]
        monitor.request_kill([r for r in snapshot.rows if r.pid == 100])

        assert next_status(queue).message == "Done: 1 succeeded, 0 failed"
        after = next_snapshot(queue).snapshot
        assert after.verification.released == 1
        assert next_status(queue).message == "Released 1 port(s)"
        assert terminator.calls == [100]

    def test_rejected_kill_does_not_refresh(self, make_monitor):
        """Test a rejected kill does not trigger a refresh."""
        source = StubTableSource([tcp(80, 0)])
        monitor, queue = make_monitor(source=source, auto_refresh=False)
        monitor.start()
        snapshot = next_snapshot(queue).snapshot
        next_status(queue)

        monitor.request_kill(snapshot.rows)

        status = next_status(queue)
        assert status.error
        assert status.message.startswith("Rejected")
        with pytest.raises(Empty):
            queue.get(timeout=0.3)
        assert source.reads == 1

    def test_kill_group_request(self, make_monitor):
        """Test a group kill terminates only that group."""
        source = StubTableSource([tcp(80, 100), tcp(81, 100), tcp(82, 200)])
        terminator = StubTerminator()
        monitor, queue = make_monitor(source=source, terminator=terminator, auto_refresh=False)
        monitor.start()
        next_snapshot(queue)
        next_status(queue)

        monitor.request_kill_group("python (/usr/bin/python3)")

        assert next_status(queue).message.startswith("Done: 1 succeeded")
        assert terminator.calls == [200]
