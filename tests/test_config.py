"""Tests for MonitorConfig."""

import pytest

from porttop.config import DEFAULT_PROTECTED_NAMES, MonitorConfig


def test_defaults():
    """Defaults match the documented policy values."""
    config = MonitorConfig()
    assert config.poll_rate == 5.0
    assert config.highlight_seconds == 2.0
    assert config.kill_timeout == 2.0
    assert config.transient_states == {"TIME_WAIT"}
    assert config.protected_names == DEFAULT_PROTECTED_NAMES
    assert config.pending_retention is None


def test_poll_rate_minimum():
    """Poll rates below 0.1s are clamped."""
    assert MonitorConfig(poll_rate=0.0).poll_rate == 0.1


@pytest.mark.parametrize(
    "values",
    [
        {"highlight_seconds": -1},
        {"kill_timeout": -0.5},
        {"pending_retention": 0},
        {"table_source": "netlink"},
    ],
)
def test_invalid_values(values):
    """Negative timings and unknown sources are rejected."""
    with pytest.raises(ValueError):
        MonitorConfig(**values)


def test_is_frozen():
    """MonitorConfig cannot be mutated."""
    config = MonitorConfig()
    with pytest.raises(AttributeError):
        config.poll_rate = 1.0
