"""Runtime configuration for porttop."""

from dataclasses import dataclass, field

# Critical OS processes that must never be terminated.
DEFAULT_PROTECTED_NAMES = frozenset(
    {
        "System",
        "System Idle Process",
        "csrss",
        "lsass",
        "smss",
        "wininit",
        "services",
        "winlogon",
    }
)

TABLE_SOURCES = ("psutil", "iphlpapi")


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """
    Policy values for the connection monitor.

    Attributes:
        poll_rate: Seconds between auto-refresh attempts.
        auto_refresh: Whether the periodic timer requests refreshes on start.
        highlight_seconds: How long New/Changed highlights stay visible.
        kill_timeout: Seconds to wait for a terminated process to exit.
        transient_states: Connection states treated as OS-managed teardown.
        protected_names: Process names that are never terminated.
        pending_retention: Max refresh cycles a pending key is tracked; None keeps it forever.
        table_source: Where connection tables are read from ("psutil" or "iphlpapi").
        log_file: Path of the log file, or None to disable file logging.
    """

    poll_rate: float = 5.0
    auto_refresh: bool = True
    highlight_seconds: float = 2.0
    kill_timeout: float = 2.0
    transient_states: frozenset[str] = frozenset({"TIME_WAIT"})
    protected_names: frozenset[str] = field(default=DEFAULT_PROTECTED_NAMES)
    pending_retention: int | None = None
    table_source: str = "psutil"
    log_file: str | None = "logs/porttop.log"

    def __post_init__(self) -> None:
        # Minimum 0.1 seconds
        object.__setattr__(self, "poll_rate", max(0.1, self.poll_rate))
        if self.highlight_seconds < 0:
            raise ValueError("highlight_seconds must not be negative")
        if self.kill_timeout < 0:
            raise ValueError("kill_timeout must not be negative")
        if self.pending_retention is not None and self.pending_retention < 1:
            raise ValueError("pending_retention must be at least 1 cycle")
        if self.table_source not in TABLE_SOURCES:
            raise ValueError(f"Unknown table source: {self.table_source!r}")
