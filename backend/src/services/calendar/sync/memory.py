"""In-memory external source, for tests and local development."""

import asyncio
from typing import Optional

from ..core.errors import SourceUnavailable
from ..core.models import BusyInterval, CalendarEvent, CalendarSettings, CalendarView
from ..core.utils import generate_id
from .base import ExternalSourceAdapter


class InMemorySourceAdapter(ExternalSourceAdapter):
    """
    Keeps remote calendars in dicts.

    ``unavailable`` marks calendar ids that fail every call; ``delay`` makes
    each call sleep first so callers can exercise their deadlines.
    """

    provider = "memory"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.busy: dict[str, list[BusyInterval]] = {}
        self.events: dict[str, dict[str, CalendarEvent]] = {}
        self.unavailable: set[str] = set()

    def add_busy(self, source_calendar_id: str, *intervals: BusyInterval) -> None:
        self.busy.setdefault(source_calendar_id, []).extend(intervals)

    async def _check(self, source_calendar_id: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if source_calendar_id in self.unavailable:
            raise SourceUnavailable(source_calendar_id)

    async def _fetch_busy(
        self, source_calendar_id: str, view: CalendarView
    ) -> list[BusyInterval]:
        await self._check(source_calendar_id)
        intervals = [
            interval
            for interval in self.busy.get(source_calendar_id, [])
            if view.intersects(interval.start, interval.end)
        ]
        for event in self.events.get(source_calendar_id, {}).values():
            if event.busy and view.intersects(event.start, event.end):
                intervals.append(
                    BusyInterval(
                        calendar_id=source_calendar_id, start=event.start, end=event.end
                    )
                )
        return intervals

    async def _push_event(
        self,
        source_calendar_id: str,
        event: CalendarEvent,
        settings: Optional[CalendarSettings] = None,
    ) -> str:
        await self._check(source_calendar_id)
        remote_id = event.remote_id or generate_id()
        self.events.setdefault(source_calendar_id, {})[remote_id] = event
        return remote_id

    async def _remove_event(self, source_calendar_id: str, remote_id: str) -> None:
        await self._check(source_calendar_id)
        self.events.get(source_calendar_id, {}).pop(remote_id, None)

    def get_event(self, source_calendar_id: str, remote_id: str) -> Optional[CalendarEvent]:
        return self.events.get(source_calendar_id, {}).get(remote_id)
