"""Data models for porttop."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import NamedTuple

# State value for sockets that have no connection state (UDP).
NO_STATE = "-"

# Sentinel path values. Bracketed paths are never real file locations.
PATH_ACCESS_DENIED = "[Access Denied]"
PATH_UNKNOWN = ""
OWNER_ACCESS_DENIED = "[Access Denied]"

# First line of a multi-row copy, in AnnotatedRow.describe() column order.
COPY_HEADER = "\t".join(
    (
        "Protocol",
        "Local Address",
        "Local Port",
        "Remote Address",
        "Remote Port",
        "State",
        "PID",
        "Process",
        "User",
        "Path",
    )
)


class Protocol(Enum):
    """Transport protocol of an observed socket."""

    TCP = "TCP"
    UDP = "UDP"


class ChangeState(Enum):
    """Transient highlight assigned to a row by the differencer."""

    NONE = "none"
    NEW = "new"
    CHANGED = "changed"


class UniqueKey(NamedTuple):
    """Identity of one observed socket: five-tuple plus owning PID."""

    protocol: Protocol
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    pid: int

    def __str__(self) -> str:
        return (
            f"{self.protocol.value}-{self.local_address}-{self.local_port}"
            f"-{self.remote_address}-{self.remote_port}-{self.pid}"
        )


@dataclass(slots=True, frozen=True)
class ConnectionRecord:
    """Immutable record of one socket as read from the OS table."""

    protocol: Protocol
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: str  # TCP state name, or NO_STATE for UDP
    pid: int  # -1 when the owner is not visible

    @property
    def key(self) -> UniqueKey:
        return UniqueKey(
            self.protocol,
            self.local_address,
            self.local_port,
            self.remote_address,
            self.remote_port,
            self.pid,
        )


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Process metadata resolved for a PID within one refresh cycle."""

    name: str
    path: str
    owner: str

    @property
    def has_location(self) -> bool:
        """Whether the path points at a real file (not empty, not a sentinel)."""
        return bool(self.path) and not self.path.startswith("[")


@dataclass(slots=True, frozen=True)
class AnnotatedRow:
    """A connection record joined with its process and derived fields."""

    record: ConnectionRecord
    process: ProcessInfo
    protected: bool = False
    change_state: ChangeState = ChangeState.NONE

    @property
    def key(self) -> UniqueKey:
        return self.record.key

    @property
    def group_key(self) -> str:
        """Process name, qualified by its executable path when the path is known."""
        if not self.process.has_location:
            return self.process.name
        return f"{self.process.name} ({self.process.path})"

    @property
    def pid(self) -> int:
        return self.record.pid

    @property
    def protocol(self) -> Protocol:
        return self.record.protocol

    @property
    def local_port(self) -> int:
        return self.record.local_port

    @property
    def state(self) -> str:
        return self.record.state

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match used by the filter box."""
        query = query.strip().lower()
        if not query:
            return True
        fields = (
            str(self.record.local_port),
            str(self.record.pid),
            self.process.name,
            self.process.path,
            self.record.local_address,
            self.record.protocol.value,
            self.record.state,
        )
        return any(query in value.lower() for value in fields)

    def describe(self) -> str:
        """Tab-separated description used when copying rows."""
        r = self.record
        return "\t".join(
            (
                r.protocol.value,
                r.local_address,
                str(r.local_port),
                r.remote_address,
                str(r.remote_port),
                r.state,
                str(r.pid),
                self.process.name,
                self.process.owner,
                self.process.path,
            )
        )


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Outcome of reconciling pending kill targets against a refresh."""

    released: int = 0
    lingering: int = 0
    transient: int = 0
    expired: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.released or self.lingering or self.transient or self.expired)

    def summary(self, transient_label: str = "TIME_WAIT") -> str:
        """Human readable status line."""
        parts = [f"Released {self.released} port(s)"]
        if self.transient:
            parts.append(f"{self.transient} in {transient_label}")
        if self.lingering:
            parts.append(f"{self.lingering} still held")
        if self.expired:
            parts.append(f"{self.expired} no longer tracked")
        return ", ".join(parts)


@dataclass(slots=True, frozen=True)
class ConnectionSnapshot:
    """
    Result of one refresh cycle.

    Rows are deduplicated by UniqueKey and sorted by local port descending.
    Snapshots are replaced wholesale, never merged.
    """

    rows: tuple[AnnotatedRow, ...] = ()
    generation: int = 0
    elapsed_ms: float = 0.0
    verification: VerificationResult | None = None
    _index: dict[UniqueKey, AnnotatedRow] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._index.update((row.key, row) for row in self.rows)

    @property
    def total(self) -> int:
        return len(self.rows)

    @property
    def tcp_count(self) -> int:
        return sum(1 for row in self.rows if row.protocol is Protocol.TCP)

    @property
    def udp_count(self) -> int:
        return sum(1 for row in self.rows if row.protocol is Protocol.UDP)

    @property
    def process_count(self) -> int:
        return len({row.pid for row in self.rows if row.pid > 0})

    @property
    def has_changes(self) -> bool:
        return any(row.change_state is not ChangeState.NONE for row in self.rows)

    def get(self, key: UniqueKey) -> AnnotatedRow | None:
        return self._index.get(key)

    def states(self) -> dict[UniqueKey, str]:
        """Map of key to connection state, the input of the next diff."""
        return {key: row.state for key, row in self._index.items()}

    def group(self, group_key: str) -> list[AnnotatedRow]:
        """All rows belonging to one running program."""
        return [row for row in self.rows if row.group_key == group_key]

    def cleared(self) -> "ConnectionSnapshot":
        """Copy of this snapshot with every ChangeState reset to NONE."""
        rows = tuple(
            row
            if row.change_state is ChangeState.NONE
            else replace(row, change_state=ChangeState.NONE)
            for row in self.rows
        )
        return ConnectionSnapshot(
            rows=rows,
            generation=self.generation,
            elapsed_ms=self.elapsed_ms,
            verification=self.verification,
        )
