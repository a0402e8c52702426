"""Shared stubs for porttop tests."""

import threading
from contextlib import contextmanager

import psutil
import pytest

from porttop.config import MonitorConfig
from porttop.coordinator import RefreshCoordinator
from porttop.errors import ProcessNotFound, TableUnavailable, TerminationDenied
from porttop.models import NO_STATE, ConnectionRecord, Protocol
from porttop.resolver import ProcessResolver


def tcp(port, pid, state="ESTABLISHED", remote=("10.0.0.1", 443), local="127.0.0.1"):
    return ConnectionRecord(
        protocol=Protocol.TCP,
        local_address=local,
        local_port=port,
        remote_address=remote[0],
        remote_port=remote[1],
        state=state,
        pid=pid,
    )


def udp(port, pid, local="0.0.0.0"):
    return ConnectionRecord(
        protocol=Protocol.UDP,
        local_address=local,
        local_port=port,
        remote_address="0.0.0.0",
        remote_port=0,
        state=NO_STATE,
        pid=pid,
    )


class StubTableSource:
    """Table source returning canned records and counting reads."""

    def __init__(self, tcp_records=(), udp_records=()):
        self.tcp_records = list(tcp_records)
        self.udp_records = list(udp_records)
        self.reads = 0
        self.fail = False
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def tcp(self):
        self.reads += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.fail:
            raise TableUnavailable("table query failed")
        return list(self.tcp_records)

    def udp(self):
        return list(self.udp_records)


class FakeProcess:
    """Minimal stand-in for psutil.Process."""

    def __init__(self, pid, name, exe="", username="user", exe_denied=False):
        self.pid = pid
        self._name = name
        self._exe = exe
        self._username = username
        self._exe_denied = exe_denied

    @contextmanager
    def oneshot(self):
        yield

    def name(self):
        return self._name

    def exe(self):
        if self._exe_denied:
            raise psutil.AccessDenied(self.pid)
        return self._exe

    def username(self):
        return self._username


class FakeProcessTable:
    """Callable lookup mapping PIDs to FakeProcess objects."""

    def __init__(self, processes=()):
        self.processes = {proc.pid: proc for proc in processes}
        self.calls = []

    def __call__(self, pid):
        self.calls.append(pid)
        if pid not in self.processes:
            raise psutil.NoSuchProcess(pid)
        return self.processes[pid]


class StubTerminator:
    """Terminator recording calls; failures configured per PID."""

    def __init__(self, denied=(), missing=(), survivors=()):
        self.denied = set(denied)
        self.missing = set(missing)
        self.survivors = set(survivors)
        self.calls = []

    def terminate(self, pid, timeout):
        self.calls.append(pid)
        if pid in self.denied:
            raise TerminationDenied(pid)
        if pid in self.missing:
            raise ProcessNotFound(pid)
        return pid not in self.survivors


@pytest.fixture
def processes():
    return FakeProcessTable(
        [
            FakeProcess(100, "nginx", exe="/usr/sbin/nginx", username="www"),
            FakeProcess(200, "python", exe="/usr/bin/python3"),
            FakeProcess(300, "lsass", exe="C:\\Windows\\System32\\lsass.exe", username="SYSTEM"),
            FakeProcess(400, "secret", exe_denied=True),
        ]
    )


@pytest.fixture
def source():
    return StubTableSource()


@pytest.fixture
def terminator():
    return StubTerminator()


@pytest.fixture
def coordinator(source, terminator, processes):
    return RefreshCoordinator(
        source=source,
        terminator=terminator,
        config=MonitorConfig(log_file=None),
        resolver_factory=lambda: ProcessResolver(lookup=processes),
    )
