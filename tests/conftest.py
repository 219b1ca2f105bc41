from __future__ import annotations

import pytest

from core.session import SessionSettings
from utils.config import ConfigManager


@pytest.fixture
def messages(tmp_path):
    # Not loaded: answers from the built-in defaults
    return ConfigManager(tmp_path)


@pytest.fixture
def settings() -> SessionSettings:
    return SessionSettings(
        tick_interval=0.01,
        inactivity_timeout=5.0,
        occupancy_check_interval=0.01,
        drain_delay=0.0,
        play_timeout=5.0,
    )
