"""
Scheduling engine facade.

Wires the expander, reminder materializer, worker pool, maintenance loop and
free/busy merger around one session manager, and exposes the entry points
controllers call.
"""

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from scheduler_platform.config import EngineSettings
from scheduler_platform.db.session import SessionManager, create_engine_from_url

from .core.errors import CalendarNotFoundError
from .core.expansion import InstanceExpander
from .core.freebusy import FreeBusyMerger
from .core.models import (
    Calendar,
    CalendarBusy,
    CalendarEvent,
    CalendarSettings,
    CalendarView,
    EventInstance,
    EventWithInstances,
)
from .core.recurrence import RecurrenceEvaluator, TimezoneResolver, resolve_timezone
from .core.utils import utcnow
from .database.typed_operations import EventStore, SessionCalendarRepository
from .reminders.maintenance import ReminderMaintenanceService
from .reminders.materializer import (
    Clock,
    EventChange,
    EventOperation,
    ReminderDispatcher,
    ReminderMaterializer,
)
from .reminders.workers import ReminderWorkerPool
from .sync.base import ExternalSourceAdapter, SourceFailure

logger = logging.getLogger(__name__)


class SchedulerEngine:
    def __init__(
        self,
        session_manager: SessionManager,
        settings: Optional[EngineSettings] = None,
        adapters: Iterable[ExternalSourceAdapter] = (),
        resolver: TimezoneResolver = resolve_timezone,
        dispatcher: Optional[ReminderDispatcher] = None,
        clock: Clock = utcnow,
    ):
        self.session_manager = session_manager
        self.settings = settings or EngineSettings()
        self.resolver = resolver
        self.adapters = {adapter.provider: adapter for adapter in adapters}

        self.expander = InstanceExpander(
            RecurrenceEvaluator(resolver, self.settings.max_instances)
        )
        self.materializer = ReminderMaterializer(
            session_manager,
            self.expander,
            horizon=self.settings.reminder_horizon,
            refresh_margin=self.settings.refresh_margin,
            insert_attempts=self.settings.insert_attempts,
            conflict_retries=self.settings.conflict_retries,
            clock=clock,
        )
        self.workers = ReminderWorkerPool(self.materializer, self.settings.worker_count)
        self.maintenance = ReminderMaintenanceService(
            self.materializer,
            self.workers,
            dispatcher=dispatcher,
            interval_seconds=self.settings.sweep_interval,
        )
        self.merger = FreeBusyMerger(
            SessionCalendarRepository(session_manager),
            self.adapters,
            self.expander,
            adapter_timeout=self.settings.adapter_timeout,
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings, **kwargs) -> "SchedulerEngine":
        engine = create_engine_from_url(settings.database_url)
        return cls(SessionManager(engine), settings, **kwargs)

    async def start(self) -> None:
        await self.workers.start()
        await self.maintenance.start()

    async def stop(self) -> None:
        await self.maintenance.stop()
        await self.workers.stop()

    # ========================================================================
    # READ PATHS
    # ========================================================================

    def expand(
        self,
        event: CalendarEvent,
        view: CalendarView,
        settings: Optional[CalendarSettings] = None,
    ) -> list[EventInstance]:
        return self.expander.expand(event, view, settings)

    async def compute_busy(
        self, calendar_ids: Sequence[str], view: CalendarView
    ) -> dict[str, CalendarBusy]:
        return await self.merger.compute_busy(calendar_ids, view)

    async def get_calendar_events(
        self, calendar_id: str, view: CalendarView
    ) -> list[EventWithInstances]:
        """
        Events on a calendar with their instances in the view.

        Raises:
            CalendarNotFoundError: If the calendar doesn't exist
        """

        def load_and_expand():
            with self.session_manager.with_session() as session:
                store = EventStore(session)
                calendar = store.get_calendar(calendar_id)
                events = store.list_events(calendar_id, view)
            return self.expander.expand_calendar(events, view, calendar.settings)

        return await asyncio.to_thread(load_and_expand)

    # ========================================================================
    # WRITE PATHS
    # ========================================================================

    async def on_event_changed(
        self, event: CalendarEvent, operation: EventOperation
    ) -> EventChange:
        """
        Queue reminder maintenance for a mutated event, and mirror the write
        to the external source when the event lives on a synced calendar.
        """
        operation = EventOperation(operation)
        change = self.workers.on_event_changed(event, operation)
        await self._sync_remote(event, operation)
        return change

    async def update_calendar_settings(
        self,
        calendar_id: str,
        week_start: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Calendar:
        """
        Raises:
            CalendarNotFoundError: If the calendar doesn't exist
            InvalidSettings: If week start or timezone are invalid
        """

        def update():
            with self.session_manager.with_session() as session:
                return EventStore(session).update_calendar_settings(
                    calendar_id, self.resolver, week_start=week_start, timezone=timezone
                )

        return await asyncio.to_thread(update)

    async def _sync_remote(self, event: CalendarEvent, operation: EventOperation) -> None:
        def load_calendar():
            with self.session_manager.with_session() as session:
                return EventStore(session).get_calendar(event.calendar_id)

        try:
            calendar = await asyncio.to_thread(load_calendar)
        except CalendarNotFoundError:
            logger.debug("Calendar %s is gone, skipping remote sync", event.calendar_id)
            return
        if calendar.source is None:
            return

        adapter = self.adapters.get(calendar.source.provider)
        if adapter is None:
            logger.warning(
                "No adapter registered for provider %s (calendar %s)",
                calendar.source.provider,
                calendar.id,
            )
            return
        remote_calendar_id = calendar.source.remote_calendar_id

        if event.remote_id and operation in (EventOperation.updated, EventOperation.deleted):
            removed = await adapter.remove_event(remote_calendar_id, event.remote_id)
            if isinstance(removed, SourceFailure):
                # Pushing now would leave two remote copies; keep the old one.
                logger.warning(
                    "Remote delete of %s failed, not pushing event %s: %s",
                    event.remote_id,
                    event.id,
                    removed.as_error().message,
                )
                return
        if operation not in (EventOperation.created, EventOperation.updated):
            return

        pushed = await adapter.push_event(remote_calendar_id, event, calendar.settings)
        if isinstance(pushed, SourceFailure):
            logger.warning("Remote push failed: %s", pushed.as_error().message)
            return

        def store_remote_id():
            with self.session_manager.with_session() as session:
                EventStore(session).set_remote_id(event.id, pushed)

        await asyncio.to_thread(store_remote_id)
