"""Opening a process's executable in the platform file manager."""

import logging
import subprocess
import sys
from collections.abc import Callable
from pathlib import PurePath

from porttop.errors import LocationUnavailable

logger = logging.getLogger(__name__)


def file_manager_command(path: str, platform: str | None = None) -> list[str]:
    """
    Build the command that shows path in the platform file manager.

    Explorer and Finder select the file itself; on other platforms the
    containing directory is opened with xdg-open.
    """
    platform = platform or sys.platform
    if platform == "win32":
        return ["explorer.exe", f"/select,{path}"]
    if platform == "darwin":
        return ["open", "-R", path]
    return ["xdg-open", str(PurePath(path).parent)]


def open_location(path: str, popen: Callable[..., object] = subprocess.Popen) -> None:
    """
    Launch the file manager for path without waiting for it.

    Raises:
        LocationUnavailable: If the file manager cannot be started.
    """
    command = file_manager_command(path)
    try:
        popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        logger.error("Cannot open location %s: %s", path, exc)
        raise LocationUnavailable(path, f"Cannot open location: {exc}") from exc
    logger.info("Opened file location: %s", path)
