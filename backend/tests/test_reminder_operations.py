"""
SQLite integration tests for reminder, watermark and event persistence.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from services.calendar.core.errors import (
    CalendarNotFoundError,
    EventNotFoundError,
    InvalidSettings,
)
from services.calendar.core.models import (
    CalendarEvent,
    CalendarView,
    ExceptionOverride,
    Frequency,
    RecurrenceRule,
    Reminder,
)
from services.calendar.core.recurrence import resolve_timezone
from services.calendar.database.typed_operations import (
    EventStore,
    ReminderStore,
    WatermarkStore,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def reminder(event_id: str, remind_at: datetime) -> Reminder:
    return Reminder(event_id=event_id, account_id="account-1", remind_at=remind_at)


class TestReminderRows:
    def test_bulk_insert_is_idempotent_on_event_and_time(self, session_manager, make_event):
        event = make_event()
        rows = [reminder(event.id, utc(2024, 1, d, 8, 50)) for d in range(1, 6)]

        with session_manager.with_session() as session:
            assert ReminderStore(session).bulk_insert(rows) == 5
        with session_manager.with_session() as session:
            # Same triggers under fresh ids collide with the stored rows.
            again = [reminder(event.id, r.remind_at) for r in rows]
            assert ReminderStore(session).bulk_insert(again) == 0
        with session_manager.with_session() as session:
            stored = ReminderStore(session).list_reminders(event.id)

        assert [r.remind_at for r in stored] == [r.remind_at for r in rows]

    def test_bulk_insert_handles_many_chunks(self, session_manager, make_event):
        event = make_event()
        start = utc(2024, 1, 1)
        rows = [reminder(event.id, start + timedelta(minutes=i)) for i in range(450)]

        with session_manager.with_session() as session:
            assert ReminderStore(session).bulk_insert(rows) == 450

    def test_delete_all_before_is_inclusive_and_exact(self, session_manager, make_event):
        event = make_event()
        cutoff = utc(2024, 1, 3, 8, 50)
        rows = [reminder(event.id, utc(2024, 1, d, 8, 50)) for d in range(1, 6)]
        with session_manager.with_session() as session:
            ReminderStore(session).bulk_insert(rows)

        with session_manager.with_session() as session:
            removed = ReminderStore(session).delete_all_before(cutoff)
        with session_manager.with_session() as session:
            remaining = ReminderStore(session).list_reminders()

        assert [r.remind_at for r in removed] == [utc(2024, 1, d, 8, 50) for d in (1, 2, 3)]
        assert all(r.remind_at <= cutoff for r in removed)
        assert all(r.remind_at > cutoff for r in remaining)
        assert len(remaining) == 2

    def test_delete_all_before_twice_is_harmless(self, session_manager, make_event):
        event = make_event()
        with session_manager.with_session() as session:
            ReminderStore(session).bulk_insert([reminder(event.id, utc(2024, 1, 1))])

        with session_manager.with_session() as session:
            first = ReminderStore(session).delete_all_before(utc(2024, 2, 1))
        with session_manager.with_session() as session:
            second = ReminderStore(session).delete_all_before(utc(2024, 2, 1))

        assert len(first) == 1
        assert second == []

    def test_delete_by_event_removes_reminders_and_watermark(self, session_manager, make_event):
        event = make_event()
        other = make_event()
        with session_manager.with_session() as session:
            ReminderStore(session).bulk_insert(
                [reminder(event.id, utc(2024, 1, 1)), reminder(other.id, utc(2024, 1, 1))]
            )
            WatermarkStore(session).compare_and_advance(event.id, None, utc(2024, 2, 1))

        with session_manager.with_session() as session:
            removed = ReminderStore(session).delete_by_event(event.id)
        with session_manager.with_session() as session:
            assert removed == 1
            assert WatermarkStore(session).read(event.id) is None
            assert [r.event_id for r in ReminderStore(session).list_reminders()] == [other.id]

    def test_delete_by_event_after_keeps_due_reminders(self, session_manager, make_event):
        event = make_event()
        with session_manager.with_session() as session:
            ReminderStore(session).bulk_insert(
                [reminder(event.id, utc(2024, 1, 1, hour)) for hour in (7, 8, 9)]
            )
            WatermarkStore(session).compare_and_advance(event.id, None, utc(2024, 2, 1))

        with session_manager.with_session() as session:
            removed = ReminderStore(session).delete_by_event(event.id, after=utc(2024, 1, 1, 8))
        with session_manager.with_session() as session:
            assert removed == 1
            assert WatermarkStore(session).read(event.id) is None
            assert [r.remind_at for r in ReminderStore(session).list_reminders()] == [
                utc(2024, 1, 1, 7),
                utc(2024, 1, 1, 8),
            ]


class TestWatermarks:
    def test_first_advance_creates_watermark(self, session_manager, make_event):
        event = make_event()

        with session_manager.with_session() as session:
            assert WatermarkStore(session).compare_and_advance(event.id, None, utc(2024, 2, 1))
        with session_manager.with_session() as session:
            watermark = WatermarkStore(session).read(event.id)

        assert watermark.expanded_until == utc(2024, 2, 1)
        assert watermark.version == 1

    def test_create_conflicts_when_watermark_exists(self, session_manager, make_event):
        event = make_event()
        with session_manager.with_session() as session:
            WatermarkStore(session).compare_and_advance(event.id, None, utc(2024, 2, 1))

        with session_manager.with_session() as session:
            assert not WatermarkStore(session).compare_and_advance(
                event.id, None, utc(2024, 3, 1)
            )

    def test_advance_requires_expected_value(self, session_manager, make_event):
        event = make_event()
        with session_manager.with_session() as session:
            store = WatermarkStore(session)
            store.compare_and_advance(event.id, None, utc(2024, 2, 1))

        with session_manager.with_session() as session:
            store = WatermarkStore(session)
            assert not store.compare_and_advance(event.id, utc(2024, 1, 15), utc(2024, 3, 1))
            assert store.compare_and_advance(event.id, utc(2024, 2, 1), utc(2024, 3, 1))

        with session_manager.with_session() as session:
            watermark = WatermarkStore(session).read(event.id)
        assert watermark.expanded_until == utc(2024, 3, 1)
        assert watermark.version == 2

    def test_watermark_never_moves_backwards(self, session_manager, make_event):
        event = make_event()
        with session_manager.with_session() as session:
            WatermarkStore(session).compare_and_advance(event.id, None, utc(2024, 2, 1))

        with session_manager.with_session() as session:
            with pytest.raises(ValueError):
                WatermarkStore(session).compare_and_advance(
                    event.id, utc(2024, 2, 1), utc(2024, 1, 1)
                )

    def test_due_lists_watermarks_before_instant(self, session_manager, make_event):
        early = make_event()
        late = make_event()
        with session_manager.with_session() as session:
            store = WatermarkStore(session)
            store.compare_and_advance(early.id, None, utc(2024, 1, 10))
            store.compare_and_advance(late.id, None, utc(2024, 2, 10))

        with session_manager.with_session() as session:
            assert WatermarkStore(session).due(utc(2024, 1, 20)) == [early.id]


class TestEventStore:
    def test_event_round_trip(self, session_manager, make_event):
        created = make_event(
            recurrence=RecurrenceRule(frequency=Frequency.weekly, interval=2, by_weekday=(0, 3)),
            exceptions=[
                ExceptionOverride(original_start=utc(2024, 1, 4, 9), cancelled=True),
                ExceptionOverride(
                    occurrence_index=2, start=utc(2024, 1, 15, 11), duration=timedelta(minutes=45)
                ),
            ],
            reminders=[timedelta(minutes=10), timedelta(hours=1)],
            busy=False,
        )

        with session_manager.with_session() as session:
            loaded = EventStore(session).get_event(created.id)

        assert loaded == created
        assert loaded.start.tzinfo is not None

    def test_sub_second_values_round_trip(self, session_manager, make_event):
        created = make_event(
            duration=timedelta(milliseconds=500),
            recurrence=RecurrenceRule(
                frequency=Frequency.daily, until=utc(2024, 1, 3, 9, 0, 0, 250000)
            ),
            exceptions=[
                ExceptionOverride(occurrence_index=1, duration=timedelta(milliseconds=750))
            ],
            reminders=[timedelta(milliseconds=1500)],
        )

        with session_manager.with_session() as session:
            store = EventStore(session)
            loaded = store.get_event(created.id)
            listed = store.list_events(
                created.calendar_id, CalendarView.create(utc(2024, 1, 1), utc(2024, 1, 2))
            )

        assert loaded == created
        assert loaded.recurrence.until == utc(2024, 1, 3, 9, 0, 0, 250000)
        assert [e.id for e in listed] == [created.id]

    @pytest.mark.parametrize(
        "values",
        [
            {"duration": timedelta(microseconds=1500)},
            {"duration": timedelta(hours=1), "reminders": [timedelta(microseconds=10)]},
        ],
    )
    def test_sub_millisecond_values_are_rejected(self, values):
        with pytest.raises(ValidationError):
            CalendarEvent(
                user_id="user-1",
                calendar_id="cal-1",
                account_id="account-1",
                start=utc(2024, 1, 1),
                **values,
            )

    def test_create_event_on_missing_calendar(self, session_manager):
        event = CalendarEvent(
            user_id="user-1",
            calendar_id="nope",
            account_id="account-1",
            start=utc(2024, 1, 1),
            duration=timedelta(hours=1),
        )

        with pytest.raises(CalendarNotFoundError):
            with session_manager.with_session() as session:
                EventStore(session).create_event(event)

    def test_update_and_delete(self, session_manager, make_event):
        event = make_event()
        moved = event.model_copy(update={"start": utc(2024, 1, 2, 9)})

        with session_manager.with_session() as session:
            EventStore(session).update_event(moved)
        with session_manager.with_session() as session:
            assert EventStore(session).get_event(event.id).start == utc(2024, 1, 2, 9)
            ReminderStore(session).bulk_insert([reminder(event.id, utc(2024, 1, 2, 8))])
        with session_manager.with_session() as session:
            deleted = EventStore(session).delete_event(event.id)
        with session_manager.with_session() as session:
            store = EventStore(session)
            assert deleted.id == event.id
            assert store.find_event(event.id) is None
            assert not store.event_exists(event.id)
            assert ReminderStore(session).list_reminders() == []
            with pytest.raises(EventNotFoundError):
                store.get_event(event.id)

    def test_list_events_filters_by_view(self, session_manager, make_event, calendar):
        single_inside = make_event(start=utc(2024, 1, 10, 9))
        make_event(start=utc(2024, 1, 1, 9))  # ends before the view
        make_event(start=utc(2024, 2, 1, 9))  # starts after the view
        recurring = make_event(
            start=utc(2023, 12, 1, 9),
            recurrence=RecurrenceRule(frequency=Frequency.daily),
        )
        view = CalendarView.create(utc(2024, 1, 5), utc(2024, 1, 20))

        with session_manager.with_session() as session:
            listed = EventStore(session).list_events(calendar.id, view)

        assert [e.id for e in listed] == [recurring.id, single_inside.id]

    def test_list_events_keeps_occurrences_moved_into_view(
        self, session_manager, make_event, calendar
    ):
        recurring = make_event(
            start=utc(2024, 1, 8, 9),
            recurrence=RecurrenceRule(frequency=Frequency.weekly),
            exceptions=[ExceptionOverride(occurrence_index=0, start=utc(2024, 1, 1, 9))],
        )
        single = make_event(
            start=utc(2024, 2, 1, 9),
            exceptions=[ExceptionOverride(occurrence_index=0, start=utc(2024, 1, 1, 12))],
        )
        make_event(
            start=utc(2024, 2, 1, 9),
            exceptions=[ExceptionOverride(occurrence_index=0, cancelled=True)],
        )
        view = CalendarView.create(utc(2024, 1, 1), utc(2024, 1, 2))

        with session_manager.with_session() as session:
            listed = EventStore(session).list_events(calendar.id, view)

        assert [e.id for e in listed] == [recurring.id, single.id]

    def test_update_calendar_settings(self, session_manager, calendar):
        with session_manager.with_session() as session:
            updated = EventStore(session).update_calendar_settings(
                calendar.id, resolve_timezone, week_start=6, timezone="Europe/Oslo"
            )

        assert updated.settings.week_start == 6
        assert updated.settings.timezone == "Europe/Oslo"

    @pytest.mark.parametrize(
        "kwargs", [{"week_start": 7}, {"week_start": -1}, {"timezone": "Not/AZone"}]
    )
    def test_invalid_calendar_settings(self, session_manager, calendar, kwargs):
        with pytest.raises(InvalidSettings):
            with session_manager.with_session() as session:
                EventStore(session).update_calendar_settings(
                    calendar.id, resolve_timezone, **kwargs
                )
