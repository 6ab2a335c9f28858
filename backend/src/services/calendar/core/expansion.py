# Event instance expansion
# Applies the recurrence evaluator to events and folds in per-occurrence overrides.

import logging
from typing import Iterable, Iterator, Optional

from .models import (
    CalendarEvent,
    CalendarSettings,
    CalendarView,
    EventInstance,
    EventWithInstances,
    ExceptionOverride,
)
from .recurrence import Occurrence, RecurrenceEvaluator

logger = logging.getLogger(__name__)


def _sort_key(instance: EventInstance):
    return (instance.start, instance.end, instance.event_id)


class InstanceExpander:
    """
    Read-only projection of events onto concrete instances.

    Visibility is decided by an instance's final interval: a modified
    occurrence shows up wherever its replacement lands, and disappears from
    the window it was moved out of.
    """

    def __init__(self, evaluator: Optional[RecurrenceEvaluator] = None):
        self.evaluator = evaluator or RecurrenceEvaluator()

    def expand(
        self,
        event: CalendarEvent,
        view: CalendarView,
        settings: Optional[CalendarSettings] = None,
    ) -> list[EventInstance]:
        """Instances whose [start, end) intersects the view, ascending by start."""
        instances = [
            instance
            for instance in self._resolve(event, view, settings)
            if view.intersects(instance.start, instance.end)
        ]
        instances.sort(key=_sort_key)
        return instances

    def instances_starting_in(
        self,
        event: CalendarEvent,
        view: CalendarView,
        settings: Optional[CalendarSettings] = None,
    ) -> list[EventInstance]:
        """
        Instances whose final start lies in [view.start, view.end).

        Contiguous views partition an event's instances, so consecutive
        horizons never see the same instance twice.
        """
        instances = [
            instance
            for instance in self._resolve(event, view, settings)
            if view.contains(instance.start)
        ]
        instances.sort(key=_sort_key)
        return instances

    def expand_calendar(
        self,
        events: Iterable[CalendarEvent],
        view: CalendarView,
        settings: Optional[CalendarSettings] = None,
    ) -> list[EventWithInstances]:
        """Expand every event, dropping the ones with no instance in the view."""
        result = []
        for event in events:
            instances = self.expand(event, view, settings)
            if instances:
                result.append(EventWithInstances(event=event, instances=instances))
        return result

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _resolve(
        self,
        event: CalendarEvent,
        view: CalendarView,
        settings: Optional[CalendarSettings],
    ) -> Iterator[EventInstance]:
        handled: set[int] = set()

        # Occurrences that start early enough to still overlap the view.
        window_start = view.start - event.duration
        for occurrence in self.evaluator.evaluate(
            event.start, event.recurrence, window_start, view.end, settings
        ):
            handled.add(occurrence.index)
            instance = self._apply(event, occurrence, self._first_match(event, occurrence))
            if instance is not None:
                yield instance

        # Occurrences from outside the window whose override may move them in.
        for override in event.exceptions:
            if override.cancelled or (override.start is None and override.duration is None):
                continue
            occurrence = self.evaluator.find_occurrence(
                event.start,
                event.recurrence,
                settings,
                index=override.occurrence_index,
                original_start=override.original_start,
            )
            if occurrence is None:
                logger.debug(
                    "Ignoring override on event %s: no such occurrence (index=%s, start=%s)",
                    event.id,
                    override.occurrence_index,
                    override.original_start,
                )
                continue
            if occurrence.index in handled:
                continue
            handled.add(occurrence.index)
            instance = self._apply(event, occurrence, self._first_match(event, occurrence))
            if instance is not None:
                yield instance

    @staticmethod
    def _first_match(
        event: CalendarEvent, occurrence: Occurrence
    ) -> Optional[ExceptionOverride]:
        for override in event.exceptions:
            if override.matches(occurrence.index, occurrence.start):
                return override
        return None

    @staticmethod
    def _apply(
        event: CalendarEvent,
        occurrence: Occurrence,
        override: Optional[ExceptionOverride],
    ) -> Optional[EventInstance]:
        start = occurrence.start
        duration = event.duration
        if override is not None:
            if override.cancelled:
                return None
            if override.start is not None:
                start = override.start
            if override.duration is not None:
                duration = override.duration
        return EventInstance(
            event_id=event.id, start=start, end=start + duration, busy=event.busy
        )


_default_expander = InstanceExpander()


def expand(
    event: CalendarEvent,
    view: CalendarView,
    settings: Optional[CalendarSettings] = None,
) -> list[EventInstance]:
    """Expand with the default evaluator."""
    return _default_expander.expand(event, view, settings)
