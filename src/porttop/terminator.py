"""Process tree termination through psutil."""

import logging
from typing import Protocol

import psutil

from porttop.errors import ProcessNotFound, TerminationDenied

logger = logging.getLogger(__name__)


class Terminator(Protocol):
    """Capability that ends a process and its descendants."""

    def terminate(self, pid: int, timeout: float) -> bool:
        """
        Kill pid and wait up to timeout seconds for it to exit.

        Returns:
            True when the process is confirmed gone.

        Raises:
            ProcessNotFound: The process does not exist.
            TerminationDenied: The OS refused the kill.
        """
        ...


class PsutilTerminator:
    """Kill a process tree with psutil, children first."""

    def terminate(self, pid: int, timeout: float) -> bool:
        try:
            root = psutil.Process(pid)
            children = root.children(recursive=True)
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid, f"PID {pid} not found") from exc
        except psutil.AccessDenied as exc:
            raise TerminationDenied(pid, f"Access denied for PID {pid}") from exc

        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                logger.debug("Could not kill child %d of %d", child.pid, pid)

        try:
            root.kill()
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid, f"PID {pid} exited") from exc
        except psutil.AccessDenied as exc:
            raise TerminationDenied(pid, f"Access denied for PID {pid}") from exc

        _, alive = psutil.wait_procs([root], timeout=timeout)
        return not alive
