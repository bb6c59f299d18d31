"""
Shared fixtures for the test suite.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from tier_guard.core.history import HistoryLog
from tier_guard.core.ledger import QuotaLedger
from tier_guard.storage.models import Tier
from tier_guard.storage.repository import UsageRepository

PREMIUM_LIMIT = 1_000_000
MINI_LIMIT = 10_000_000
LIMITS = {Tier.PREMIUM: PREMIUM_LIMIT, Tier.MINI: MINI_LIMIT}


class FakeClock:
    """Settable clock returning UTC instants."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)

    def set(self, moment: datetime) -> None:
        self.moment = moment


@pytest.fixture
def clock():
    """Clock frozen at 2025-01-14 12:00 UTC."""
    return FakeClock(datetime(2025, 1, 14, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "test.db")


@pytest.fixture
def repository(db_path):
    return UsageRepository(db_path)


@pytest.fixture
def ledger(repository, clock):
    """Initialized ledger with the default limits."""
    ledger = QuotaLedger(repository, LIMITS, clock)
    ledger.initialize()
    return ledger


@pytest.fixture
def history(repository, ledger):
    return HistoryLog(repository)
