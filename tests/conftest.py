"""
Shared fixtures for allocation engine tests
"""

from datetime import date

import pytest

from config import EngineSettings
from database import get_db_connection
from engine import AllocationEngine
from models import Actor, Allocation


@pytest.fixture
def make_allocation():
    """Factory for allocations with sensible defaults"""
    def _make(**overrides):
        values = dict(
            fund_id="fund-1",
            deal_id="deal-1",
            security_type="equity",
            committed_amount="1000000.00",
        )
        values.update(overrides)
        return Allocation(**values)
    return _make


@pytest.fixture
def actor():
    return Actor(user_id="analyst-1")


@pytest.fixture
def read_only_actor():
    return Actor(user_id="viewer-1", can_write=False)


class RecordingNotifier:
    """Collects (event, payload) pairs"""

    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [e for e, _ in self.events]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def today():
    return date(2024, 1, 15)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(db_path=str(tmp_path / "allocations.db"), max_retries=2, busy_timeout=1.0)


@pytest.fixture
def engine(settings, notifier, today):
    conn = get_db_connection(settings.db_path, settings.busy_timeout)
    eng = AllocationEngine(conn=conn, settings=settings, clock=lambda: today, notifier=notifier)
    yield eng
    eng.close()
