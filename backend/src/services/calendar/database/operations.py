# Database operations for the scheduling engine
# Reminder and watermark persistence, plus the event/calendar CRUD jobs need

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .schema import Calendar, Event, EventReminder, ReminderWatermark
from ..core import models
from ..core.errors import CalendarNotFoundError, EventNotFoundError
from ..core.freebusy import CalendarSnapshot
from ..core.utils import ensure_utc, generate_id

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bind parameter counts well under driver limits.
BULK_CHUNK_SIZE = 200


def _chunks(items: Sequence, size: int = BULK_CHUNK_SIZE):
    for offset in range(0, len(items), size):
        yield items[offset : offset + size]


def _insert_ignoring_conflicts(
    session: Session,
    model: type,
    rows: list[dict[str, Any]],
    index_elements: list[str],
) -> int:
    """INSERT rows, skipping any that collide on ``index_elements``. Returns rows inserted."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
        return session.execute(stmt).rowcount
    if dialect == "sqlite":
        stmt = sqlite.insert(model).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
        return session.execute(stmt).rowcount

    inserted = 0
    for row in rows:
        try:
            with session.begin_nested():
                session.execute(insert(model).values(**row))
            inserted += 1
        except IntegrityError:
            continue
    return inserted


# ============================================================================
# REMINDER OPERATIONS
# ============================================================================


def bulk_insert(session: Session, reminders: Sequence[models.Reminder]) -> int:
    """
    Insert reminders, idempotent on (event_id, remind_at).

    Returns the number of rows actually inserted.
    """
    inserted = 0
    for chunk in _chunks(list(reminders)):
        rows = [
            {
                "id": reminder.id,
                "event_id": reminder.event_id,
                "account_id": reminder.account_id,
                "remind_at": reminder.remind_at,
            }
            for reminder in chunk
        ]
        inserted += _insert_ignoring_conflicts(
            session, EventReminder, rows, ["event_id", "remind_at"]
        )
    return inserted


def delete_all_before(session: Session, instant: datetime) -> list[models.Reminder]:
    """Delete every reminder with remind_at <= instant and return the removed rows."""
    instant = ensure_utc(instant)
    rows = (
        session.execute(
            select(EventReminder)
            .where(EventReminder.remind_at <= instant)
            .order_by(EventReminder.remind_at, EventReminder.id)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    removed = [row.to_domain() for row in rows]
    for chunk in _chunks([reminder.id for reminder in removed]):
        session.execute(
            delete(EventReminder)
            .where(EventReminder.id.in_(chunk))
            .execution_options(synchronize_session=False)
        )
    return removed


def delete_by_event(
    session: Session, event_id: str, after: Optional[datetime] = None
) -> int:
    """
    Delete an event's watermark and its reminders, only those with
    remind_at > ``after`` when given. Returns reminders removed.
    """
    query = delete(EventReminder).where(EventReminder.event_id == event_id)
    if after is not None:
        query = query.where(EventReminder.remind_at > ensure_utc(after))
    result = session.execute(query.execution_options(synchronize_session=False))
    session.execute(
        delete(ReminderWatermark)
        .where(ReminderWatermark.event_id == event_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def list_reminders(session: Session, event_id: Optional[str] = None) -> list[models.Reminder]:
    query = select(EventReminder).order_by(EventReminder.remind_at, EventReminder.id)
    if event_id is not None:
        query = query.where(EventReminder.event_id == event_id)
    return [row.to_domain() for row in session.execute(query).scalars().all()]


# ============================================================================
# WATERMARK OPERATIONS
# ============================================================================


def read_watermark(session: Session, event_id: str) -> Optional[models.ExpansionWatermark]:
    row = session.execute(
        select(ReminderWatermark).where(ReminderWatermark.event_id == event_id)
    ).scalar_one_or_none()
    return row.to_domain() if row is not None else None


def compare_and_advance(
    session: Session,
    event_id: str,
    expected: Optional[datetime],
    new_until: datetime,
) -> bool:
    """
    Move an event's watermark from ``expected`` to ``new_until``.

    ``expected=None`` means no watermark exists yet. Returns False when the
    stored watermark no longer matches ``expected``.

    Raises:
        ValueError: If new_until is earlier than expected
    """
    new_until = ensure_utc(new_until)
    if expected is None:
        inserted = _insert_ignoring_conflicts(
            session,
            ReminderWatermark,
            [{"event_id": event_id, "expanded_until": new_until, "version": 1}],
            ["event_id"],
        )
        return inserted == 1

    expected = ensure_utc(expected)
    if new_until < expected:
        raise ValueError(
            f"Watermark for event {event_id} cannot move backwards "
            f"({expected.isoformat()} -> {new_until.isoformat()})"
        )
    result = session.execute(
        update(ReminderWatermark)
        .where(
            ReminderWatermark.event_id == event_id,
            ReminderWatermark.expanded_until == expected,
        )
        .values(expanded_until=new_until, version=ReminderWatermark.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def watermarks_due(session: Session, before: datetime) -> list[str]:
    """Event ids whose watermark is earlier than ``before``."""
    return list(
        session.execute(
            select(ReminderWatermark.event_id)
            .where(ReminderWatermark.expanded_until < ensure_utc(before))
            .order_by(ReminderWatermark.expanded_until)
        )
        .scalars()
        .all()
    )


# ============================================================================
# CALENDAR OPERATIONS
# ============================================================================


def create_calendar(
    session: Session,
    user_id: str,
    account_id: str,
    calendar_id: Optional[str] = None,
    settings: Optional[models.CalendarSettings] = None,
    source: Optional[models.SyncedSource] = None,
) -> Calendar:
    """Create a calendar, optionally linked to an external source."""
    settings = settings or models.CalendarSettings()
    calendar = Calendar(
        id=calendar_id or generate_id(),
        user_id=user_id,
        account_id=account_id,
        week_start=settings.week_start,
        timezone=settings.timezone,
        source_provider=source.provider if source else None,
        source_calendar_id=source.remote_calendar_id if source else None,
    )
    session.add(calendar)
    session.flush()
    return calendar


def get_calendar(session: Session, calendar_id: str) -> Optional[Calendar]:
    """Get a calendar by ID."""
    return session.get(Calendar, calendar_id)


def update_calendar_settings(
    session: Session,
    calendar_id: str,
    resolve_timezone: Callable,
    week_start: Optional[int] = None,
    timezone: Optional[str] = None,
) -> Calendar:
    """Update week start and timezone of a calendar."""
    calendar = session.get(Calendar, calendar_id)
    if calendar is None:
        raise CalendarNotFoundError(calendar_id)

    current = calendar.to_domain().settings
    updated = current.with_updates(
        resolve_timezone, week_start=week_start, timezone=timezone
    )
    calendar.week_start = updated.week_start
    calendar.timezone = updated.timezone
    session.flush()
    return calendar


# ============================================================================
# EVENT OPERATIONS
# ============================================================================


def create_event(session: Session, event: models.CalendarEvent) -> Event:
    """Persist a new event on an existing calendar."""
    if session.get(Calendar, event.calendar_id) is None:
        raise CalendarNotFoundError(event.calendar_id)
    row = Event.from_domain(event)
    session.add(row)
    session.flush()
    return row


def get_event(session: Session, event_id: str) -> Optional[Event]:
    """Get an event by ID."""
    return session.get(Event, event_id)


def event_exists(session: Session, event_id: str) -> bool:
    """Check for an event row, bypassing the session's identity map."""
    return (
        session.execute(select(Event.id).where(Event.id == event_id)).scalar_one_or_none()
        is not None
    )


def update_event(session: Session, event: models.CalendarEvent) -> Event:
    """Overwrite a stored event with new values."""
    row = session.get(Event, event.id)
    if row is None:
        raise EventNotFoundError(event.id)
    if row.calendar_id != event.calendar_id and session.get(Calendar, event.calendar_id) is None:
        raise CalendarNotFoundError(event.calendar_id)
    row.apply(event)
    session.flush()
    return row


def set_remote_id(session: Session, event_id: str, remote_id: Optional[str]) -> None:
    session.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(remote_id=remote_id)
        .execution_options(synchronize_session=False)
    )


def delete_event(session: Session, event_id: str) -> models.CalendarEvent:
    """
    Delete an event together with its reminders and watermark.

    Returns the deleted event.
    """
    row = session.get(Event, event_id)
    if row is None:
        raise EventNotFoundError(event_id)
    deleted = row.to_domain()
    delete_by_event(session, event_id)
    session.delete(row)
    session.flush()
    return deleted


def list_events_by_calendar(
    session: Session,
    calendar_id: str,
    view: Optional[models.CalendarView] = None,
) -> list[Event]:
    """
    List events on a calendar.

    With a view, only events that may have instances in it are returned:
    recurring events starting before the view end, single events
    overlapping it, and any event whose overrides move or resize an
    occurrence, since those can land anywhere.
    """
    query = select(Event).where(Event.calendar_id == calendar_id)
    if view is not None:
        query = query.where(
            or_(
                Event.has_modified_overrides.is_(True),
                and_(
                    Event.start_time < view.end,
                    or_(Event.recurrence.is_not(None), Event.end_time > view.start),
                ),
            )
        )
    return list(session.execute(query.order_by(Event.start_time, Event.id)).scalars().all())


def load_for_view(
    session: Session, calendar_ids: Sequence[str], view: models.CalendarView
) -> dict[str, CalendarSnapshot]:
    """Load calendars and their candidate events; unknown ids are omitted."""
    snapshots: dict[str, CalendarSnapshot] = {}
    for calendar_id in calendar_ids:
        calendar = session.get(Calendar, calendar_id)
        if calendar is None:
            continue
        events = []
        if not calendar.source_provider:
            events = [
                row.to_domain()
                for row in list_events_by_calendar(session, calendar_id, view)
            ]
        snapshots[calendar_id] = CalendarSnapshot(
            calendar=calendar.to_domain(), events=events
        )
    return snapshots
