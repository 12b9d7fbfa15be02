from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from carecall.db.base import Base
from carecall.ratelimit.guard import QuotaGuard
from carecall.ratelimit.store import InMemoryCounterStore
from carecall.reminders.models import Reminder, ReminderEvent  # noqa: F401  (registers tables)
from carecall.reminders.service import ReminderLifecycleService
from carecall.schedules.models import Schedule  # noqa: F401
from carecall.schedules.service import ScheduleService

# Monday 2025-01-06 10:00 in New York
START = datetime(2025, 1, 6, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    """Controllable clock for services (returns aware UTC datetimes)"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeMonotonic:
    """Seconds clock for counter stores and the anomaly observer"""

    def __init__(self, start: float = 1_000_000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'carecall-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def reminders(db, clock):
    return ReminderLifecycleService(db, clock=clock)


@pytest.fixture
def schedules(db, clock):
    return ScheduleService(db, clock=clock)


@pytest.fixture
def ticker():
    return FakeMonotonic()


@pytest.fixture
def counter_store(ticker):
    return InMemoryCounterStore(clock=ticker)


@pytest.fixture
def quota_guard(counter_store):
    return QuotaGuard(store=counter_store, fail_open=True, disabled_actions=[], bypass_private_networks=False)
