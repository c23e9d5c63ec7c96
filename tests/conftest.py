"""Shared test fixtures for the Pulseboard test suite.

Every test runs against an isolated config: the user-level config file is
redirected into ``tmp_path`` and config env overrides are cleared.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pulseboard.config.settings import reload_config
from tests.helpers import FakeClock, make_config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the developer's own config and environment out of tests."""
    monkeypatch.setattr(
        "pulseboard.config.settings.USER_CONFIG_PATH", tmp_path / "user-config.toml"
    )
    for name in (
        "PULSEBOARD_CONFIG",
        "OPENCLAW_SESSIONS_DIR",
        "PULSEBOARD_PORT",
        "PULSEBOARD_DEMO_MODE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("pulseboard.config.settings.load_dotenv", lambda *a, **k: False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def sessions_dir(tmp_path) -> Path:
    """Empty sessions directory."""
    path = tmp_path / "sessions"
    path.mkdir()
    return path


@pytest.fixture
def tmp_config(sessions_dir):
    """Config rooted at the temporary sessions directory."""
    return make_config(sessions_dir)


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at a fixed instant."""
    return FakeClock()
