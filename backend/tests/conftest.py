"""
Shared pytest fixtures for all tests.

Provides a temporary SQLite database per test, a session manager over it,
a controllable clock and factories for calendars and events.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from scheduler_platform.db.session import SessionManager, create_engine_from_url
from services.calendar.core.models import CalendarEvent, CalendarSettings, SyncedSource
from services.calendar.database.base import Base
from services.calendar.database import schema  # noqa: F401  (registers tables)
from services.calendar.database.typed_operations import EventStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def sqlite_db():
    """Create a temporary SQLite database with all tables."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    engine = create_engine_from_url(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def session_manager(sqlite_db):
    return SessionManager(sqlite_db)


@pytest.fixture
def clock():
    return FakeClock(utc(2024, 1, 1, 8, 0))


@pytest.fixture
def make_calendar(session_manager):
    def _make(
        calendar_id=None,
        settings: CalendarSettings = None,
        source: SyncedSource = None,
    ):
        with session_manager.with_session() as session:
            return EventStore(session).create_calendar(
                user_id="user-1",
                account_id="account-1",
                calendar_id=calendar_id,
                settings=settings,
                source=source,
            )

    return _make


@pytest.fixture
def calendar(make_calendar):
    return make_calendar(calendar_id="cal-1")


@pytest.fixture
def make_event(session_manager, calendar):
    """Persist an event; keyword arguments override the defaults."""

    def _make(**overrides):
        values = {
            "user_id": "user-1",
            "calendar_id": calendar.id,
            "account_id": "account-1",
            "start": utc(2024, 1, 1, 9, 0),
            "duration": timedelta(hours=1),
        }
        values.update(overrides)
        with session_manager.with_session() as session:
            return EventStore(session).create_event(CalendarEvent(**values))

    return _make
