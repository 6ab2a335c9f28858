"""
Incremental reminder materialization.

Each event carrying reminder offsets has a persisted watermark marking how far
into the future its reminders exist as rows. An expansion generates the
reminders between the watermark and ``now + horizon`` and advances the
watermark in the same transaction, guarded by a compare-and-swap on the old
value. A batch that fails leaves the watermark where it was.

Everything here is synchronous and blocking; the worker pool runs it in
threads.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import ExpansionConflict, ExpansionJobFailed
from ..core.expansion import InstanceExpander
from ..core.models import CalendarEvent, CalendarView, Reminder
from ..core.utils import utcnow
from ..database.typed_operations import EventStore, ReminderStore, WatermarkStore

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(days=30)
DEFAULT_REFRESH_MARGIN = timedelta(days=7)

Clock = Callable[[], datetime]
ReminderDispatcher = Callable[[list[Reminder]], None]


class EventOperation(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"
    refresh = "refresh"


class ExpansionOutcome(str, Enum):
    advanced = "advanced"
    up_to_date = "up_to_date"
    no_reminders = "no_reminders"
    purged = "purged"


@dataclass(frozen=True)
class EventChange:
    """Message emitted by the event mutation path."""

    event_id: str
    operation: EventOperation
    event: Optional[CalendarEvent] = None

    @classmethod
    def of(cls, event: CalendarEvent, operation: EventOperation) -> "EventChange":
        return cls(event_id=event.id, operation=EventOperation(operation), event=event)

    @classmethod
    def refresh(cls, event_id: str) -> "EventChange":
        return cls(event_id=event_id, operation=EventOperation.refresh)


class _EventDeleted(Exception):
    pass


class ReminderMaterializer:
    """
    Owns watermark advancement and reminder row lifecycle.

    Args:
        session_manager: Provides ``with_session()`` transactions
        expander: Instance expander used to find occurrences
        horizon: How far past ``now`` reminders are materialized
        refresh_margin: Watermarks closer than this to ``now`` are refreshed
        insert_attempts: Whole-batch attempts on storage errors
        conflict_retries: Re-reads after losing the watermark compare-and-swap
        clock: Returns the current instant
    """

    def __init__(
        self,
        session_manager,
        expander: Optional[InstanceExpander] = None,
        horizon: timedelta = DEFAULT_HORIZON,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        insert_attempts: int = 3,
        conflict_retries: int = 5,
        clock: Clock = utcnow,
    ):
        self.session_manager = session_manager
        self.expander = expander or InstanceExpander()
        self.horizon = horizon
        self.refresh_margin = refresh_margin
        self.insert_attempts = max(1, insert_attempts)
        self.conflict_retries = max(0, conflict_retries)
        self.clock = clock

    # ========================================================================
    # JOBS
    # ========================================================================

    def handle(self, change: EventChange) -> ExpansionOutcome:
        """Apply one event change: reset and expand, refresh, or purge."""
        if change.operation == EventOperation.deleted:
            self.purge(change.event_id)
            return ExpansionOutcome.purged
        if change.operation in (EventOperation.created, EventOperation.updated):
            self.reset(change.event_id)
        return self.expand_event(change.event_id)

    def reset(self, event_id: str) -> int:
        """
        Drop an event's future reminders and its watermark so the next
        expansion starts over. Rows already due stay for the sweep to deliver.
        """
        with self.session_manager.with_session() as session:
            removed = ReminderStore(session).delete_by_event(event_id, after=self.clock())
        logger.debug("Reset reminders for event %s (%d removed)", event_id, removed)
        return removed

    def purge(self, event_id: str) -> int:
        """Remove all reminders and the watermark of a deleted event."""
        with self.session_manager.with_session() as session:
            removed = ReminderStore(session).delete_by_event(event_id)
        logger.info("Purged %d reminders of deleted event %s", removed, event_id)
        return removed

    def expand_event(self, event_id: str) -> ExpansionOutcome:
        """
        Bring an event's reminders up to ``now + horizon``.

        Raises:
            ExpansionConflict: If the watermark kept moving underneath us
            ExpansionJobFailed: If storage kept failing
        """
        conflicts = 0
        while True:
            try:
                return self._expand_with_attempts(event_id)
            except ExpansionConflict:
                conflicts += 1
                if conflicts > self.conflict_retries:
                    raise
                logger.info(
                    "Watermark conflict for event %s, retrying (%d/%d)",
                    event_id,
                    conflicts,
                    self.conflict_retries,
                )

    def sweep(self, dispatcher: Optional[ReminderDispatcher] = None) -> list[Reminder]:
        """
        Delete reminders due at or before now and hand them to the dispatcher.

        The dispatcher runs inside the deleting transaction; if it raises, the
        delete is rolled back and the same rows come back on the next sweep.
        """
        now = self.clock()
        with self.session_manager.with_session() as session:
            removed = ReminderStore(session).delete_all_before(now)
            if removed and dispatcher is not None:
                dispatcher(removed)
        if removed:
            logger.info("Retention sweep removed %d reminders due by %s", len(removed), now)
        return removed

    def due_for_refresh(self) -> list[str]:
        """Events whose watermark is within the refresh margin of now."""
        with self.session_manager.with_session() as session:
            return WatermarkStore(session).due(self.clock() + self.refresh_margin)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _expand_with_attempts(self, event_id: str) -> ExpansionOutcome:
        last_error: Optional[SQLAlchemyError] = None
        for attempt in range(1, self.insert_attempts + 1):
            try:
                return self._expand_once(event_id)
            except _EventDeleted:
                self.purge(event_id)
                return ExpansionOutcome.purged
            except SQLAlchemyError as exc:
                last_error = exc
                logger.warning(
                    "Reminder batch for event %s failed (attempt %d/%d): %s",
                    event_id,
                    attempt,
                    self.insert_attempts,
                    exc,
                )
        raise ExpansionJobFailed(event_id, self.insert_attempts) from last_error

    def _expand_once(self, event_id: str) -> ExpansionOutcome:
        now = self.clock()
        target = now + self.horizon

        with self.session_manager.with_session() as session:
            events = EventStore(session)
            watermarks = WatermarkStore(session)

            event = events.find_event(event_id)
            if event is None:
                raise _EventDeleted(event_id)
            if not event.reminders:
                return ExpansionOutcome.no_reminders

            current = watermarks.read(event_id)
            expected = current.expanded_until if current is not None else None
            if expected is not None and expected >= target:
                return ExpansionOutcome.up_to_date

            range_start = max(expected or now, event.start)
            inserted = 0
            if range_start < target:
                settings = events.get_calendar(event.calendar_id).settings
                view = CalendarView(start=range_start, end=target)
                reminders = [
                    Reminder(
                        event_id=event.id,
                        account_id=event.account_id,
                        remind_at=instance.start - offset,
                    )
                    for instance in self.expander.instances_starting_in(event, view, settings)
                    for offset in event.reminders
                    # Only future reminders; anything already due belongs to the sweep.
                    if instance.start - offset > now
                ]
                inserted = ReminderStore(session).bulk_insert(reminders)

            if not watermarks.compare_and_advance(event_id, expected, target):
                raise ExpansionConflict(event_id)

            # Deleted while we were expanding: throw the batch away.
            if not events.event_exists(event_id):
                raise _EventDeleted(event_id)

        logger.debug(
            "Expanded event %s reminders to %s (%d inserted)", event_id, target, inserted
        )
        return ExpansionOutcome.advanced
