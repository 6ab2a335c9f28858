"""
Typed operations wrappers for the scheduling engine.

These classes wrap the raw operations functions around a SQLAlchemy session
and speak domain models only, so callers never touch ORM rows.

Example usage:
    with session_manager.with_session() as session:
        events = EventStore(session)
        calendar = events.create_calendar(user_id="u1", account_id="acc")
        event = events.create_event(
            CalendarEvent(
                user_id="u1",
                calendar_id=calendar.id,
                account_id="acc",
                start=datetime(2024, 1, 15, 10, tzinfo=timezone.utc),
                duration=timedelta(hours=1),
            )
        )
"""

from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from . import operations as ops
from ..core.errors import CalendarNotFoundError, EventNotFoundError
from ..core.freebusy import CalendarSnapshot
from ..core.models import (
    Calendar,
    CalendarEvent,
    CalendarSettings,
    CalendarView,
    ExpansionWatermark,
    Reminder,
    SyncedSource,
)


class ReminderStore:
    """Materialized reminder rows."""

    def __init__(self, session: Session):
        self.session = session

    def bulk_insert(self, reminders: Sequence[Reminder]) -> int:
        return ops.bulk_insert(self.session, reminders)

    def delete_all_before(self, instant: datetime) -> list[Reminder]:
        return ops.delete_all_before(self.session, instant)

    def delete_by_event(self, event_id: str, after: Optional[datetime] = None) -> int:
        return ops.delete_by_event(self.session, event_id, after)

    def list_reminders(self, event_id: Optional[str] = None) -> list[Reminder]:
        return ops.list_reminders(self.session, event_id)


class WatermarkStore:
    """Per-event expansion watermarks."""

    def __init__(self, session: Session):
        self.session = session

    def read(self, event_id: str) -> Optional[ExpansionWatermark]:
        return ops.read_watermark(self.session, event_id)

    def compare_and_advance(
        self, event_id: str, expected: Optional[datetime], new_until: datetime
    ) -> bool:
        return ops.compare_and_advance(self.session, event_id, expected, new_until)

    def due(self, before: datetime) -> list[str]:
        return ops.watermarks_due(self.session, before)


class EventStore:
    """Calendars and events."""

    def __init__(self, session: Session):
        self.session = session

    # ========================================================================
    # CALENDAR OPERATIONS
    # ========================================================================

    def create_calendar(
        self,
        user_id: str,
        account_id: str,
        *,
        calendar_id: Optional[str] = None,
        settings: Optional[CalendarSettings] = None,
        source: Optional[SyncedSource] = None,
    ) -> Calendar:
        return ops.create_calendar(
            self.session,
            user_id=user_id,
            account_id=account_id,
            calendar_id=calendar_id,
            settings=settings,
            source=source,
        ).to_domain()

    def get_calendar(self, calendar_id: str) -> Calendar:
        """
        Get a calendar by ID.

        Raises:
            CalendarNotFoundError: If the calendar doesn't exist
        """
        calendar = ops.get_calendar(self.session, calendar_id)
        if calendar is None:
            raise CalendarNotFoundError(calendar_id)
        return calendar.to_domain()

    def update_calendar_settings(
        self,
        calendar_id: str,
        resolve_timezone: Callable,
        *,
        week_start: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Calendar:
        return ops.update_calendar_settings(
            self.session,
            calendar_id,
            resolve_timezone,
            week_start=week_start,
            timezone=timezone,
        ).to_domain()

    # ========================================================================
    # EVENT OPERATIONS
    # ========================================================================

    def create_event(self, event: CalendarEvent) -> CalendarEvent:
        return ops.create_event(self.session, event).to_domain()

    def find_event(self, event_id: str) -> Optional[CalendarEvent]:
        row = ops.get_event(self.session, event_id)
        return row.to_domain() if row is not None else None

    def event_exists(self, event_id: str) -> bool:
        return ops.event_exists(self.session, event_id)

    def get_event(self, event_id: str) -> CalendarEvent:
        """
        Get an event by ID.

        Raises:
            EventNotFoundError: If the event doesn't exist
        """
        event = self.find_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def update_event(self, event: CalendarEvent) -> CalendarEvent:
        return ops.update_event(self.session, event).to_domain()

    def set_remote_id(self, event_id: str, remote_id: Optional[str]) -> None:
        ops.set_remote_id(self.session, event_id, remote_id)

    def delete_event(self, event_id: str) -> CalendarEvent:
        return ops.delete_event(self.session, event_id)

    def list_events(
        self, calendar_id: str, view: Optional[CalendarView] = None
    ) -> list[CalendarEvent]:
        return [
            row.to_domain()
            for row in ops.list_events_by_calendar(self.session, calendar_id, view)
        ]

    def load_for_view(
        self, calendar_ids: Sequence[str], view: CalendarView
    ) -> dict[str, CalendarSnapshot]:
        return ops.load_for_view(self.session, calendar_ids, view)


class SessionCalendarRepository:
    """Calendar lookup for the free/busy merger, one session per call."""

    def __init__(self, session_manager):
        self.session_manager = session_manager

    def load_for_view(
        self, calendar_ids: Sequence[str], view: CalendarView
    ) -> dict[str, CalendarSnapshot]:
        with self.session_manager.with_session() as session:
            return EventStore(session).load_for_view(calendar_ids, view)
