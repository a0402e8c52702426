"""Closed-loop verification that killed processes released their sockets."""

import logging
from collections.abc import Iterable, Mapping

from porttop.models import UniqueKey, VerificationResult

logger = logging.getLogger(__name__)


class VerificationTracker:
    """
    Track sockets whose owning process was asked to terminate.

    Keys stay pending until a refresh no longer shows them. Keys that stay
    present are counted every cycle, as lingering or transient, and are
    only dropped when a retention cap is configured.
    """

    def __init__(
        self,
        transient_states: Iterable[str] = ("TIME_WAIT",),
        retention: int | None = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            transient_states: States that mean the OS is tearing the socket down.
            retention: Max reconcile cycles a key may stay pending, None for no limit.
        """
        self._transient_states = frozenset(transient_states)
        self._retention = retention
        self._pending: dict[UniqueKey, int] = {}

    @property
    def pending(self) -> frozenset[UniqueKey]:
        return frozenset(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, keys: Iterable[UniqueKey]) -> None:
        """Start tracking keys; re-registering a key resets its age."""
        for key in keys:
            self._pending[key] = 0

    def reconcile(self, current: Mapping[UniqueKey, str]) -> VerificationResult | None:
        """
        Classify every pending key against the latest refresh.

        Args:
            current: Key to connection state map of the new snapshot.

        Returns:
            The counts for this cycle, or None when nothing was pending.
        """
        if not self._pending:
            return None

        released = lingering = transient = expired = 0
        for key in list(self._pending):
            state = current.get(key)
            if state is None:
                released += 1
                del self._pending[key]
                continue

            if state in self._transient_states:
                transient += 1
            else:
                lingering += 1

            age = self._pending[key] + 1
            if self._retention is not None and age >= self._retention:
                expired += 1
                del self._pending[key]
            else:
                self._pending[key] = age

        result = VerificationResult(
            released=released, lingering=lingering, transient=transient, expired=expired
        )
        logger.info("Verification: %s", result.summary())
        return result
