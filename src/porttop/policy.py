"""Protection policy and kill planning."""

from collections.abc import Iterable
from dataclasses import dataclass

from porttop.config import DEFAULT_PROTECTED_NAMES
from porttop.models import AnnotatedRow, ConnectionRecord, ProcessInfo, UniqueKey

# PIDs at or below this value are the idle process and the kernel.
MAX_SYSTEM_PID = 4


def is_protected(
    record: ConnectionRecord,
    process: ProcessInfo,
    protected_names: Iterable[str] = DEFAULT_PROTECTED_NAMES,
) -> bool:
    """Whether a connection belongs to a process that must never be terminated."""
    if record.pid <= MAX_SYSTEM_PID:
        return True
    name = process.name.casefold()
    return any(name == protected.casefold() for protected in protected_names)


@dataclass(slots=True, frozen=True)
class KillPlan:
    """What a kill request would actually do once protected rows are excluded."""

    pids: tuple[int, ...]
    keys: frozenset[UniqueKey]
    protected_count: int

    @property
    def rejected(self) -> bool:
        return not self.pids

    @property
    def all_protected(self) -> bool:
        """Every candidate row was protected (AllTargetsProtected)."""
        return not self.pids and self.protected_count > 0


def plan_kill(rows: Iterable[AnnotatedRow]) -> KillPlan:
    """
    Split candidate rows into killable PIDs and protected exclusions.

    PIDs are distinct and kept in first-seen order. The keys of every
    non-protected row are returned so they can be tracked for release.
    """
    pids: dict[int, None] = {}
    keys = set()
    protected_count = 0
    for row in rows:
        if row.protected or row.pid <= MAX_SYSTEM_PID:
            protected_count += 1
            continue
        pids.setdefault(row.pid)
        keys.add(row.key)
    return KillPlan(pids=tuple(pids), keys=frozenset(keys), protected_count=protected_count)
