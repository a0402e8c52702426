"""Refresh orchestration: read, resolve, diff, verify, publish."""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from porttop.config import MonitorConfig
from porttop.differ import deduplicate, diff, order_rows
from porttop.errors import RefreshFailed, TerminationFailure
from porttop.models import AnnotatedRow, ConnectionSnapshot, UniqueKey
from porttop.policy import is_protected, plan_kill
from porttop.resolver import ProcessResolver
from porttop.tables import TableSource, make_table_source, read_connections
from porttop.terminator import PsutilTerminator, Terminator
from porttop.verification import VerificationTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class KillBatchResult:
    """Per-PID outcome of a batch termination."""

    succeeded: tuple[int, ...] = ()
    failed: tuple[int, ...] = ()

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


@dataclass(slots=True, frozen=True)
class KillOutcome:
    """Result of a kill request after the protection policy was applied."""

    batch: KillBatchResult
    protected_count: int = 0
    rejected: bool = False
    all_protected: bool = False

    def summary(self) -> str:
        if self.all_protected:
            return "Rejected: every selected process is protected"
        if self.rejected:
            return "Nothing to terminate"
        message = (
            f"Done: {self.batch.success_count} succeeded, "
            f"{self.batch.failure_count} failed"
        )
        if self.protected_count:
            message += f" ({self.protected_count} protected skipped)"
        return message


class RefreshCoordinator:
    """
    Owns the current snapshot and the pending verification set.

    refresh() runs at most once at a time; a call made while another
    refresh is in flight returns None without touching the OS tables.
    """

    def __init__(
        self,
        source: TableSource | None = None,
        terminator: Terminator | None = None,
        config: MonitorConfig | None = None,
        resolver_factory: Callable[[], ProcessResolver] = ProcessResolver,
    ) -> None:
        """
        Initialize the RefreshCoordinator.

        Args:
            source: Connection table reader. Built from config.table_source if omitted.
            terminator: Process killer. Defaults to PsutilTerminator.
            config: Policy values. Defaults to MonitorConfig().
            resolver_factory: Builds a fresh ProcessResolver for each refresh.
        """
        self._config = config or MonitorConfig()
        self._source = source or make_table_source(self._config.table_source)
        self._terminator = terminator or PsutilTerminator()
        self._resolver_factory = resolver_factory
        self._tracker = VerificationTracker(
            transient_states=self._config.transient_states,
            retention=self._config.pending_retention,
        )
        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._snapshot = ConnectionSnapshot()
        self._generation = 0

    @property
    def snapshot(self) -> ConnectionSnapshot:
        """The last successfully published snapshot."""
        return self._snapshot

    @property
    def pending(self) -> frozenset[UniqueKey]:
        return self._tracker.pending

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    def refresh(self) -> ConnectionSnapshot | None:
        """
        Run one full refresh cycle and publish the result.

        Returns:
            The new snapshot, or None if a refresh was already in flight.

        Raises:
            RefreshFailed: If any stage fails; the previous snapshot stays current.
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Refresh already in progress, skipping")
            return None
        try:
            return self._refresh()
        except RefreshFailed:
            raise
        except Exception as exc:
            logger.error("Refresh failed", exc_info=True)
            raise RefreshFailed(exc) from exc
        finally:
            self._busy.release()

    def _refresh(self) -> ConnectionSnapshot:
        previous = self._snapshot.states()
        started = time.perf_counter()

        records = deduplicate(read_connections(self._source))

        resolver = self._resolver_factory()
        protected_names = self._config.protected_names
        rows = []
        for record in records:
            process = resolver.resolve(record.pid)
            rows.append(
                AnnotatedRow(
                    record=record,
                    process=process,
                    protected=is_protected(record, process, protected_names),
                )
            )
        rows = diff(previous, order_rows(rows))
        elapsed_ms = (time.perf_counter() - started) * 1000

        with self._state_lock:
            verification = self._tracker.reconcile({row.key: row.state for row in rows})
            self._generation += 1
            snapshot = ConnectionSnapshot(
                rows=tuple(rows),
                generation=self._generation,
                elapsed_ms=elapsed_ms,
                verification=verification,
            )
            self._snapshot = snapshot

        logger.info(
            "Refresh complete: %d rows, %d processes, %.0f ms",
            snapshot.total,
            len(resolver),
            elapsed_ms,
        )
        return snapshot

    def clear_changes(self, generation: int) -> ConnectionSnapshot | None:
        """
        Reset New/Changed highlights if generation is still the current snapshot.

        Returns:
            The cleared snapshot, or None if a newer snapshot was published.
        """
        with self._state_lock:
            if self._snapshot.generation != generation or not self._snapshot.has_changes:
                return None
            self._snapshot = self._snapshot.cleared()
            return self._snapshot

    def register_pending(self, keys: Iterable[UniqueKey]) -> None:
        """Track keys whose owner is about to be terminated."""
        with self._state_lock:
            self._tracker.register(keys)

    def kill_batch(self, pids: Iterable[int]) -> KillBatchResult:
        """Terminate each PID independently; one failure never stops the rest."""
        succeeded = []
        failed = []
        for pid in pids:
            try:
                confirmed = self._terminator.terminate(pid, self._config.kill_timeout)
            except TerminationFailure as exc:
                logger.warning("Termination of PID %d failed: %s", pid, exc)
                failed.append(pid)
                continue
            if confirmed:
                succeeded.append(pid)
            else:
                logger.warning("PID %d still running after %.1fs", pid, self._config.kill_timeout)
                failed.append(pid)
        result = KillBatchResult(succeeded=tuple(succeeded), failed=tuple(failed))
        logger.info(
            "Kill batch: %d succeeded, %d failed",
            result.success_count,
            result.failure_count,
        )
        return result

    def kill_rows(self, rows: Iterable[AnnotatedRow]) -> KillOutcome:
        """
        Terminate the owners of rows, silently skipping protected ones.

        The keys of every non-protected row are registered for verification
        before any process is killed.
        """
        plan = plan_kill(rows)
        if plan.rejected:
            if plan.all_protected:
                logger.warning("Kill rejected: all %d targets are protected", plan.protected_count)
            return KillOutcome(
                batch=KillBatchResult(),
                protected_count=plan.protected_count,
                rejected=True,
                all_protected=plan.all_protected,
            )

        if plan.protected_count:
            logger.warning("Skipping %d protected rows", plan.protected_count)
        self.register_pending(plan.keys)
        batch = self.kill_batch(plan.pids)
        return KillOutcome(batch=batch, protected_count=plan.protected_count)

    def kill_group(self, group_key: str) -> KillOutcome:
        """Terminate every non-protected process in a GroupKey."""
        rows = self._snapshot.group(group_key)
        logger.info("Kill group %r: %d rows", group_key, len(rows))
        return self.kill_rows(rows)
