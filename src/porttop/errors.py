"""Exceptions raised by the porttop engine."""


class PorttopError(Exception):
    """Base class for porttop errors."""


class TableUnavailable(PorttopError):
    """The OS connection table could not be obtained."""


class RefreshFailed(PorttopError):
    """A refresh cycle aborted; the previous snapshot stays current."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Refresh failed: {cause}")
        self.cause = cause


class TerminationFailure(PorttopError):
    """Terminating a single process failed."""

    def __init__(self, pid: int, message: str = "") -> None:
        super().__init__(message or f"Could not terminate PID {pid}")
        self.pid = pid


class ProcessNotFound(TerminationFailure):
    """The process no longer exists."""


class TerminationDenied(TerminationFailure):
    """The OS refused to terminate the process."""


class LocationUnavailable(PorttopError):
    """The file manager could not be launched for an executable path."""

    def __init__(self, path: str, message: str = "") -> None:
        super().__init__(message or f"Cannot open location of {path}")
        self.path = path
