"""Process metadata resolution with a per-refresh cache."""

import logging
from collections.abc import Callable
from typing import Any

import psutil

from porttop.models import (
    OWNER_ACCESS_DENIED,
    PATH_ACCESS_DENIED,
    PATH_UNKNOWN,
    ProcessInfo,
)

logger = logging.getLogger(__name__)

IDLE_PROCESS = ProcessInfo(name="System Idle Process", path=PATH_UNKNOWN, owner="SYSTEM")
KERNEL_PROCESS = ProcessInfo(name="System", path="ntoskrnl.exe", owner="SYSTEM")
EXITED_PROCESS = ProcessInfo(name="Unknown (Exited)", path=PATH_UNKNOWN, owner="Unknown")
UNKNOWN_PROCESS = ProcessInfo(name="Unknown", path=PATH_UNKNOWN, owner="Unknown")

FIXED_IDENTITIES = {0: IDLE_PROCESS, 4: KERNEL_PROCESS}


class ProcessResolver:
    """
    Resolve PIDs to ProcessInfo, memoized for a single refresh cycle.

    A new resolver is created for every refresh and discarded afterwards,
    so a PID reused by another program is never served from a stale cache.
    Failures for one PID are absorbed into sentinel metadata.
    """

    def __init__(self, lookup: Callable[[int], Any] = psutil.Process) -> None:
        """
        Initialize the resolver.

        Args:
            lookup: Factory returning a psutil.Process-like object for a PID.
        """
        self._lookup = lookup
        self._cache: dict[int, ProcessInfo] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def resolve(self, pid: int) -> ProcessInfo:
        """Return the metadata for pid, querying the OS at most once per cycle."""
        info = self._cache.get(pid)
        if info is None:
            info = self._query(pid)
            self._cache[pid] = info
        return info

    def _query(self, pid: int) -> ProcessInfo:
        if pid in FIXED_IDENTITIES:
            return FIXED_IDENTITIES[pid]
        if pid < 0:
            return UNKNOWN_PROCESS

        try:
            proc = self._lookup(pid)
            with proc.oneshot():
                name = proc.name()
                owner = self._owner(proc)
                path = self._path(proc)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            logger.debug("PID %d exited before it could be resolved", pid)
            return EXITED_PROCESS
        except psutil.AccessDenied:
            # Name itself is unreadable; keep the row but mark it restricted
            return ProcessInfo(name="Unknown", path=PATH_ACCESS_DENIED, owner=OWNER_ACCESS_DENIED)

        return ProcessInfo(name=name or "Unknown", path=path, owner=owner)

    @staticmethod
    def _path(proc: Any) -> str:
        try:
            return proc.exe() or PATH_UNKNOWN
        except psutil.AccessDenied:
            return PATH_ACCESS_DENIED

    @staticmethod
    def _owner(proc: Any) -> str:
        try:
            return proc.username() or "Unknown"
        except psutil.AccessDenied:
            return OWNER_ACCESS_DENIED
