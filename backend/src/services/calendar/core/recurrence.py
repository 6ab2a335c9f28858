# Recurrence rule evaluation
# Pure functions over dateutil.rrule: no I/O, no persisted state.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo

from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, FR, MO, SA, SU, TH, TU, WE, rrule

from .errors import InvalidSettings, UnresolvableRecurrence
from .models import CalendarSettings, Frequency, RecurrenceRule
from .utils import ensure_utc

logger = logging.getLogger(__name__)

TimezoneResolver = Callable[[str], tzinfo]

DEFAULT_MAX_INSTANCES = 2500

_FREQUENCIES = {
    Frequency.daily: DAILY,
    Frequency.weekly: WEEKLY,
    Frequency.monthly: MONTHLY,
    Frequency.yearly: YEARLY,
}
_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


@dataclass(frozen=True)
class Occurrence:
    """An occurrence start and its global index counted from the anchor."""

    index: int
    start: datetime


def resolve_timezone(name: str) -> tzinfo:
    if name == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def validate_rule(rule: RecurrenceRule) -> None:
    """
    Check a recurrence rule for values that cannot be evaluated.

    Raises:
        UnresolvableRecurrence: If the rule is malformed
    """
    if rule.count is not None and rule.until is not None:
        raise UnresolvableRecurrence(
            "Recurrence rule cannot have both count and until", field="count"
        )
    if rule.interval < 1:
        raise UnresolvableRecurrence(
            f"Recurrence interval must be positive, got {rule.interval}", field="interval"
        )
    if rule.count is not None and rule.count < 1:
        raise UnresolvableRecurrence(
            f"Recurrence count must be positive, got {rule.count}", field="count"
        )
    for day in rule.by_weekday:
        if not 0 <= day <= 6:
            raise UnresolvableRecurrence(
                f"Weekday selector out of range: {day}", field="by_weekday"
            )
    for day in rule.by_month_day:
        if day == 0 or abs(day) > 31:
            raise UnresolvableRecurrence(
                f"Month day selector out of range: {day}", field="by_month_day"
            )
    if rule.week_start is not None and not 0 <= rule.week_start <= 6:
        raise UnresolvableRecurrence(
            f"Week start out of range: {rule.week_start}", field="week_start"
        )


class RecurrenceEvaluator:
    """
    Evaluates recurrence rules in a calendar's wall-clock timezone.

    Occurrences are generated from the anchor so the global index (and with it
    ``count``) never depends on how a caller slices its windows. Every public
    evaluation is bounded by an explicit window and by ``max_instances``.
    """

    def __init__(
        self,
        resolver: TimezoneResolver = resolve_timezone,
        max_instances: int = DEFAULT_MAX_INSTANCES,
    ):
        self.resolver = resolver
        self.max_instances = max_instances

    def evaluate(
        self,
        base_start: datetime,
        rule: Optional[RecurrenceRule],
        window_start: datetime,
        window_end: datetime,
        settings: Optional[CalendarSettings] = None,
    ) -> Iterator[Occurrence]:
        """
        Lazily yield occurrences starting in [window_start, window_end).

        A missing rule means the anchor is the only occurrence (index 0).

        Raises:
            UnresolvableRecurrence: If the rule is malformed
            InvalidSettings: If the calendar timezone cannot be resolved
        """
        base_start = ensure_utc(base_start)
        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)
        if rule is None:
            return iter(
                [Occurrence(0, base_start)]
                if window_start <= base_start < window_end
                else []
            )
        validate_rule(rule)
        occurrences = self._occurrences(base_start, rule, settings or CalendarSettings())
        return self._bounded(occurrences, window_start, window_end)

    def find_occurrence(
        self,
        base_start: datetime,
        rule: Optional[RecurrenceRule],
        settings: Optional[CalendarSettings] = None,
        *,
        index: Optional[int] = None,
        original_start: Optional[datetime] = None,
    ) -> Optional[Occurrence]:
        """Look up a single occurrence by global index or by original start."""
        base_start = ensure_utc(base_start)
        if original_start is not None:
            original_start = ensure_utc(original_start)
            window_end = original_start + timedelta(microseconds=1)
            for occurrence in self.evaluate(
                base_start, rule, original_start, window_end, settings
            ):
                return occurrence
            return None

        if index is None or index < 0:
            return None
        if rule is None:
            return Occurrence(0, base_start) if index == 0 else None
        validate_rule(rule)
        for occurrence in self._occurrences(base_start, rule, settings or CalendarSettings()):
            if occurrence.index == index:
                return occurrence
        return None

    def build_rrule(
        self, base_start: datetime, rule: RecurrenceRule, settings: CalendarSettings
    ) -> rrule:
        """Translate a rule into a dateutil rrule anchored in local time."""
        try:
            tz = self.resolver(settings.timezone)
        except (KeyError, ValueError):
            raise InvalidSettings(
                f"Unknown timezone: {settings.timezone}", field="timezone"
            )

        week_start = rule.week_start if rule.week_start is not None else settings.week_start
        kwargs = {
            "dtstart": base_start.astimezone(tz),
            "interval": rule.interval,
            "wkst": _WEEKDAYS[week_start],
            "cache": False,
        }
        if rule.count is not None:
            kwargs["count"] = rule.count
        if rule.until is not None:
            kwargs["until"] = rule.until.astimezone(tz)
        if rule.by_weekday:
            kwargs["byweekday"] = [_WEEKDAYS[day] for day in rule.by_weekday]
        if rule.by_month_day:
            kwargs["bymonthday"] = list(rule.by_month_day)
        return rrule(_FREQUENCIES[rule.frequency], **kwargs)

    def _occurrences(
        self, base_start: datetime, rule: RecurrenceRule, settings: CalendarSettings
    ) -> Iterator[Occurrence]:
        # Unbounded for open-ended rules; callers must stop iterating.
        for index, local_start in enumerate(self.build_rrule(base_start, rule, settings)):
            yield Occurrence(index, local_start.astimezone(timezone.utc))

    def _bounded(
        self,
        occurrences: Iterator[Occurrence],
        window_start: datetime,
        window_end: datetime,
    ) -> Iterator[Occurrence]:
        emitted = 0
        for occurrence in occurrences:
            if occurrence.start >= window_end:
                return
            if occurrence.start < window_start:
                continue
            if emitted >= self.max_instances:
                logger.warning(
                    "Recurrence evaluation capped at %d instances for window %s - %s",
                    self.max_instances,
                    window_start,
                    window_end,
                )
                return
            emitted += 1
            yield occurrence


_default_evaluator = RecurrenceEvaluator()


def evaluate(
    base_start: datetime,
    rule: Optional[RecurrenceRule],
    window_start: datetime,
    window_end: datetime,
    settings: Optional[CalendarSettings] = None,
) -> Iterator[Occurrence]:
    """Evaluate with the default resolver and instance cap."""
    return _default_evaluator.evaluate(base_start, rule, window_start, window_end, settings)
