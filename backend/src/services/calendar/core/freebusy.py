# Free/busy computation
# Interval merging for local calendars and synced external sources.

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from ..sync.base import ExternalSourceAdapter, SourceFailure
from .expansion import InstanceExpander
from .models import BusyInterval, Calendar, CalendarBusy, CalendarEvent, CalendarView

logger = logging.getLogger(__name__)

DEFAULT_ADAPTER_TIMEOUT = 5.0


# ============================================================================
# INTERVAL ALGEBRA
# ============================================================================


def merge_intervals(intervals: Iterable[BusyInterval]) -> list[BusyInterval]:
    """
    Collapse intervals into a sorted, disjoint, non-touching sequence.

    Sorted by start then end; a candidate starting at or before the current
    interval's end is folded into it. Empty intervals are dropped.
    """
    ordered = sorted(
        (interval for interval in intervals if interval.end > interval.start),
        key=lambda interval: (interval.start, interval.end),
    )
    merged: list[BusyInterval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            current = merged[-1]
            if interval.end > current.end:
                merged[-1] = current.model_copy(update={"end": interval.end})
        else:
            merged.append(interval)
    return merged


def clip_to_view(intervals: Iterable[BusyInterval], view: CalendarView) -> list[BusyInterval]:
    """Intersect each interval with the view, dropping those left empty."""
    clipped = []
    for interval in intervals:
        start = max(interval.start, view.start)
        end = min(interval.end, view.end)
        if start < end:
            clipped.append(interval.model_copy(update={"start": start, "end": end}))
    return clipped


# ============================================================================
# MERGER
# ============================================================================


@dataclass
class CalendarSnapshot:
    """A calendar and the events that may have instances in a view."""

    calendar: Calendar
    events: list[CalendarEvent] = field(default_factory=list)


class CalendarRepository(Protocol):
    def load_for_view(
        self, calendar_ids: Sequence[str], view: CalendarView
    ) -> dict[str, CalendarSnapshot]:
        """Load calendars by id; unknown ids are absent from the result."""
        ...


class FreeBusyMerger:
    """
    Computes merged busy intervals per calendar.

    Local calendars are expanded from their events. Synced calendars are
    delegated to the adapter registered for their provider, each call bounded
    by ``adapter_timeout``; a failed or late source is reported unavailable
    with no intervals rather than as free time.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        adapters: Optional[Mapping[str, ExternalSourceAdapter]] = None,
        expander: Optional[InstanceExpander] = None,
        adapter_timeout: float = DEFAULT_ADAPTER_TIMEOUT,
    ):
        self.repository = repository
        self.adapters = dict(adapters or {})
        self.expander = expander or InstanceExpander()
        self.adapter_timeout = adapter_timeout

    async def compute_busy(
        self, calendar_ids: Sequence[str], view: CalendarView
    ) -> dict[str, CalendarBusy]:
        ids = list(dict.fromkeys(calendar_ids))
        results, synced = await asyncio.to_thread(self._local_results, ids, view)

        remote = await asyncio.gather(
            *(self._remote_busy(calendar, view) for calendar in synced)
        )
        for busy in remote:
            results[busy.calendar_id] = busy

        return {calendar_id: results[calendar_id] for calendar_id in ids}

    def _local_results(
        self, ids: list[str], view: CalendarView
    ) -> tuple[dict[str, CalendarBusy], list[Calendar]]:
        # Runs in a worker thread: loading and expansion both block.
        snapshots = self.repository.load_for_view(ids, view)

        results: dict[str, CalendarBusy] = {}
        synced: list[Calendar] = []
        for calendar_id in ids:
            snapshot = snapshots.get(calendar_id)
            if snapshot is None:
                logger.warning("Free/busy requested for unknown calendar %s", calendar_id)
                results[calendar_id] = CalendarBusy(calendar_id=calendar_id, available=False)
            elif snapshot.calendar.is_synced:
                synced.append(snapshot.calendar)
            else:
                results[calendar_id] = CalendarBusy(
                    calendar_id=calendar_id, busy=self.local_busy(snapshot, view)
                )
        return results, synced

    def local_busy(self, snapshot: CalendarSnapshot, view: CalendarView) -> list[BusyInterval]:
        calendar = snapshot.calendar
        candidates = [
            BusyInterval(calendar_id=calendar.id, start=instance.start, end=instance.end)
            for event in snapshot.events
            if event.busy
            for instance in self.expander.expand(event, view, calendar.settings)
        ]
        return clip_to_view(merge_intervals(candidates), view)

    async def _remote_busy(self, calendar: Calendar, view: CalendarView) -> CalendarBusy:
        source = calendar.source
        adapter = self.adapters.get(source.provider)
        if adapter is None:
            logger.warning(
                "No adapter registered for provider %s (calendar %s)",
                source.provider,
                calendar.id,
            )
            return CalendarBusy(calendar_id=calendar.id, available=False)

        try:
            result = await asyncio.wait_for(
                adapter.fetch_busy(source.remote_calendar_id, view),
                timeout=self.adapter_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Free/busy fetch for calendar %s timed out after %.1fs",
                calendar.id,
                self.adapter_timeout,
            )
            return CalendarBusy(calendar_id=calendar.id, available=False)

        if isinstance(result, SourceFailure):
            return CalendarBusy(calendar_id=calendar.id, available=False)

        candidates = [
            interval.model_copy(update={"calendar_id": calendar.id}) for interval in result
        ]
        return CalendarBusy(
            calendar_id=calendar.id, busy=clip_to_view(merge_intervals(candidates), view)
        )
