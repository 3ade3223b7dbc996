import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import focus_session as fs  # noqa: E402


@pytest.fixture
def temp_db_path(tmp_path):
    return tmp_path / "test_tasks.db"


@pytest.fixture
def vclock():
    return fs.VirtualClock()


@pytest.fixture
def make_timer(vclock):
    def _make(**overrides):
        settings = fs.TimerSettings(**overrides)
        return fs.TimerStateMachine(settings, vclock, clock=vclock.now)
    return _make
