# Domain models for the scheduling engine
# Instants are timezone-aware UTC datetimes, durations are timedeltas.

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidSettings, InvalidWindow, UnresolvableRecurrence
from .utils import ensure_utc, from_timestamp_ms, generate_id


WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

# Storage and wire precision of durations
MILLISECOND = timedelta(milliseconds=1)


# ============================================================================
# ENUMS
# ============================================================================


class Frequency(str, Enum):
    """Recurrence frequency."""

    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


# ============================================================================
# RECURRENCE
# ============================================================================


class RecurrenceRule(BaseModel):
    """
    Recurrence rule anchored on the owning event's start.

    Weekdays are 0 (Monday) through 6 (Sunday). ``week_start`` falls back to
    the calendar setting when unset. A rule with neither ``count`` nor
    ``until`` is unbounded and must only ever be evaluated inside a window.
    """

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_weekday: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    week_start: Optional[int] = None

    @field_validator("until")
    @classmethod
    def _normalize_until(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None

    def to_rrule_string(self) -> str:
        """
        Render as an RFC 5545 RRULE line.

        UNTIL has second resolution there, so a sub-second ``until`` is
        truncated. Storage keeps the full value.
        """
        parts = [f"FREQ={self.frequency.value.upper()}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime('%Y%m%dT%H%M%SZ')}")
        if self.by_weekday:
            parts.append("BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in self.by_weekday))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.week_start is not None:
            parts.append(f"WKST={WEEKDAY_CODES[self.week_start]}")
        return "RRULE:" + ";".join(parts)

    @classmethod
    def from_rrule_string(cls, text: str) -> "RecurrenceRule":
        """
        Parse an RFC 5545 RRULE line.

        Supports FREQ, INTERVAL, COUNT, UNTIL, BYDAY (without ordinal
        prefixes), BYMONTHDAY and WKST. Anything else is rejected rather than
        silently dropped.
        """
        body = text.strip()
        if body.upper().startswith("RRULE:"):
            body = body[6:]

        fields: dict[str, str] = {}
        for part in body.split(";"):
            if not part:
                continue
            key, sep, value = part.partition("=")
            if not sep:
                raise UnresolvableRecurrence(
                    f"Malformed recurrence component: {part}", field="recurrence"
                )
            fields[key.strip().upper()] = value.strip()

        freq = fields.pop("FREQ", "")
        try:
            frequency = Frequency(freq.lower())
        except ValueError:
            raise UnresolvableRecurrence(
                f"Unsupported recurrence frequency: {freq!r}", field="frequency"
            )

        kwargs: dict = {"frequency": frequency}
        try:
            if "INTERVAL" in fields:
                kwargs["interval"] = int(fields.pop("INTERVAL"))
            if "COUNT" in fields:
                kwargs["count"] = int(fields.pop("COUNT"))
            if "BYMONTHDAY" in fields:
                kwargs["by_month_day"] = tuple(
                    int(day) for day in fields.pop("BYMONTHDAY").split(",")
                )
        except ValueError:
            raise UnresolvableRecurrence(
                f"Non-numeric recurrence component in {text!r}", field="recurrence"
            )
        if "UNTIL" in fields:
            kwargs["until"] = _parse_rrule_until(fields.pop("UNTIL"))
        if "BYDAY" in fields:
            kwargs["by_weekday"] = tuple(
                _parse_weekday(code) for code in fields.pop("BYDAY").split(",")
            )
        if "WKST" in fields:
            kwargs["week_start"] = _parse_weekday(fields.pop("WKST"))

        if fields:
            raise UnresolvableRecurrence(
                f"Unsupported recurrence components: {', '.join(sorted(fields))}",
                field="recurrence",
            )
        return cls(**kwargs)


def _parse_weekday(code: str) -> int:
    code = code.strip().upper()
    if code not in WEEKDAY_CODES:
        raise UnresolvableRecurrence(f"Unsupported weekday: {code!r}", field="by_weekday")
    return WEEKDAY_CODES.index(code)


def _parse_rrule_until(value: str) -> datetime:
    for fmt in ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise UnresolvableRecurrence(f"Malformed UNTIL value: {value!r}", field="until")


class ExceptionOverride(BaseModel):
    """
    Per-occurrence exception, addressed by original start or by the global
    occurrence index. A cancelled override removes the occurrence; otherwise
    ``start``/``duration`` replace the occurrence's own values.
    """

    model_config = ConfigDict(frozen=True)

    original_start: Optional[datetime] = None
    occurrence_index: Optional[int] = None
    cancelled: bool = False
    start: Optional[datetime] = None
    duration: Optional[timedelta] = None

    @field_validator("original_start", "start")
    @classmethod
    def _normalize_instant(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_target(self) -> "ExceptionOverride":
        if (self.original_start is None) == (self.occurrence_index is None):
            raise ValueError("exactly one of original_start or occurrence_index is required")
        if self.occurrence_index is not None and self.occurrence_index < 0:
            raise ValueError("occurrence_index must be non-negative")
        if self.duration is not None and self.duration <= timedelta(0):
            raise ValueError("override duration must be positive")
        return self

    def matches(self, index: int, original_start: datetime) -> bool:
        if self.original_start is not None:
            return self.original_start == original_start
        return self.occurrence_index == index


# ============================================================================
# CALENDARS
# ============================================================================


class CalendarSettings(BaseModel):
    """Per-calendar settings consumed by recurrence evaluation."""

    model_config = ConfigDict(frozen=True)

    week_start: int = Field(default=0, ge=0, le=6)
    timezone: str = "UTC"

    def with_updates(
        self,
        resolve_timezone: Callable,
        week_start: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> "CalendarSettings":
        """Return updated settings, raising InvalidSettings on bad values."""
        updates: dict = {}
        if week_start is not None:
            if not 0 <= week_start <= 6:
                raise InvalidSettings(
                    f"Invalid wkst property: {week_start}, must be between 0 and 6",
                    field="week_start",
                )
            updates["week_start"] = week_start
        if timezone is not None:
            try:
                resolve_timezone(timezone)
            except (KeyError, ValueError):
                raise InvalidSettings(
                    f"Invalid timezone property: {timezone}, must be a valid IANA Timezone string",
                    field="timezone",
                )
            updates["timezone"] = timezone
        return self.model_copy(update=updates)


class SyncedSource(BaseModel):
    """Link from a local calendar to the external calendar holding its state."""

    model_config = ConfigDict(frozen=True)

    provider: str
    remote_calendar_id: str


class Calendar(BaseModel):
    id: str = Field(default_factory=generate_id)
    user_id: str
    account_id: str
    settings: CalendarSettings = Field(default_factory=CalendarSettings)
    source: Optional[SyncedSource] = None

    @property
    def is_synced(self) -> bool:
        return self.source is not None


# ============================================================================
# EVENTS
# ============================================================================


class CalendarEvent(BaseModel):
    """
    A calendar event. Without a recurrence rule it has exactly one
    occurrence, the event itself.
    """

    id: str = Field(default_factory=generate_id)
    user_id: str
    calendar_id: str
    account_id: str
    start: datetime
    duration: timedelta
    busy: bool = True
    recurrence: Optional[RecurrenceRule] = None
    exceptions: list[ExceptionOverride] = Field(default_factory=list)
    reminders: list[timedelta] = Field(default_factory=list)
    remote_id: Optional[str] = None

    @field_validator("start")
    @classmethod
    def _normalize_start(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("duration must be positive")
        if value % MILLISECOND:
            raise ValueError("duration must be a whole number of milliseconds")
        return value

    @field_validator("reminders")
    @classmethod
    def _check_reminders(cls, value: list[timedelta]) -> list[timedelta]:
        if any(offset < timedelta(0) for offset in value):
            raise ValueError("reminder offsets must not be negative")
        if any(offset % MILLISECOND for offset in value):
            raise ValueError("reminder offsets must be whole milliseconds")
        return value

    @property
    def end(self) -> datetime:
        return self.start + self.duration

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


class EventInstance(BaseModel):
    """One concrete occurrence. Derived per query, never persisted."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    start: datetime
    end: datetime
    busy: bool = True


class EventWithInstances(BaseModel):
    event: CalendarEvent
    instances: list[EventInstance]


# ============================================================================
# VIEWS
# ============================================================================


class CalendarView(BaseModel):
    """Half-open instant range [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "CalendarView":
        if self.start >= self.end:
            raise ValueError("view start must be before view end")
        return self

    @classmethod
    def create(cls, start: datetime, end: datetime) -> "CalendarView":
        """Build a view, raising InvalidWindow when start >= end."""
        if ensure_utc(start) >= ensure_utc(end):
            raise InvalidWindow(start, end)
        return cls(start=start, end=end)

    @classmethod
    def from_timestamps(cls, start_ts: int, end_ts: int) -> "CalendarView":
        """Build a view from millisecond epoch timestamps."""
        if start_ts >= end_ts:
            raise InvalidWindow(start_ts, end_ts)
        return cls(start=from_timestamp_ms(start_ts), end=from_timestamp_ms(end_ts))

    def intersects(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


# ============================================================================
# REMINDERS
# ============================================================================


class Reminder(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    event_id: str
    account_id: str
    remind_at: datetime

    @field_validator("remind_at")
    @classmethod
    def _normalize_remind_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ExpansionWatermark(BaseModel):
    """Rightmost instant already materialized into reminders for an event."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    expanded_until: datetime
    version: int = 1

    @field_validator("expanded_until")
    @classmethod
    def _normalize_expanded_until(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ============================================================================
# FREE/BUSY
# ============================================================================


class BusyInterval(BaseModel):
    """Occupied [start, end) range on one calendar."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "BusyInterval":
        if self.end < self.start:
            raise ValueError("busy interval ends before it starts")
        return self


class CalendarBusy(BaseModel):
    """
    Merged busy intervals for one calendar. ``available`` is False when the
    calendar's state could not be read; ``busy`` is then empty and must not be
    read as free time.
    """

    calendar_id: str
    busy: list[BusyInterval] = Field(default_factory=list)
    available: bool = True
