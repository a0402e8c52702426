"""Tests for opening file locations."""

import subprocess

import pytest

from porttop import launcher
from porttop.errors import LocationUnavailable
from porttop.launcher import file_manager_command, open_location


def test_windows_selects_the_file():
    """Explorer is asked to select the executable."""
    command = file_manager_command("C:\\Program Files\\App\\app.exe", platform="win32")
    assert command == ["explorer.exe", "/select,C:\\Program Files\\App\\app.exe"]


def test_macos_reveals_the_file():
    """Finder reveals the executable."""
    assert file_manager_command("/Applications/App.app", platform="darwin") == [
        "open",
        "-R",
        "/Applications/App.app",
    ]


def test_linux_opens_the_directory():
    """xdg-open gets the containing directory."""
    assert file_manager_command("/usr/sbin/nginx", platform="linux") == ["xdg-open", "/usr/sbin"]


def test_open_location_launches_without_waiting(monkeypatch):
    """The file manager is started detached from the terminal."""
    monkeypatch.setattr(launcher.sys, "platform", "linux")
    calls = []

    def popen(command, **kwargs):
        calls.append((command, kwargs))

    open_location("/usr/sbin/nginx", popen=popen)

    assert calls == [
        (["xdg-open", "/usr/sbin"], {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL})
    ]


def test_missing_file_manager_raises():
    """An unlaunchable file manager becomes LocationUnavailable."""

    def popen(command, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", command[0])

    with pytest.raises(LocationUnavailable) as excinfo:
        open_location("/usr/sbin/nginx", popen=popen)
    assert excinfo.value.path == "/usr/sbin/nginx"
    assert str(excinfo.value).startswith("Cannot open location")
