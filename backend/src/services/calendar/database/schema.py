# Schema for the scheduling engine
# Calendars, events, materialized reminders and expansion watermarks

from datetime import datetime, timedelta
from typing import Any, Optional
from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .base import Base
from ..core import models
from ..core.utils import ensure_utc, utcnow


def _to_ms(value: timedelta) -> int:
    return value // timedelta(milliseconds=1)


# ============================================================================
# MODELS
# ============================================================================


class Calendar(Base):
    """
    Calendar owned by a user.
    Carries the settings recurrence evaluation runs under, and optionally the
    external source holding the calendar's true state.
    """

    __tablename__ = "calendars"
    __table_args__ = (Index("ix_calendar_user", "user_id"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    week_start: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    timezone: Mapped[str] = mapped_column(
        String(100), default="UTC", server_default="UTC"
    )
    # Synced source (both set or both null)
    source_provider: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_calendar_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    events: Mapped[list["Event"]] = relationship(back_populates="calendar")

    def to_domain(self) -> models.Calendar:
        source = None
        if self.source_provider and self.source_calendar_id:
            source = models.SyncedSource(
                provider=self.source_provider,
                remote_calendar_id=self.source_calendar_id,
            )
        return models.Calendar(
            id=self.id,
            user_id=self.user_id,
            account_id=self.account_id,
            settings=models.CalendarSettings(
                week_start=self.week_start, timezone=self.timezone
            ),
            source=source,
        )


class Event(Base):
    """
    Calendar event.
    ``end_time`` is the end of the first occurrence; recurring events are
    filtered by their rule instead. Durations are whole milliseconds.
    """

    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("ix_event_calendar_start", "calendar_id", "start_time"),
        Index("ix_event_end", "end_time"),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    calendar_id: Mapped[str] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    busy: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")

    # RecurrenceRule fields, SQL NULL for single events
    recurrence: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    exceptions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    # Some override replaces a start or duration, so instances can land
    # outside the interval the row's own times describe
    has_modified_overrides: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    # Reminder offsets in milliseconds before each occurrence
    reminder_offsets: Mapped[list[int]] = mapped_column(JSON, default=list)
    remote_id: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    calendar: Mapped["Calendar"] = relationship(back_populates="events")

    def apply(self, event: models.CalendarEvent) -> None:
        """Copy a domain event's values onto this row."""
        self.calendar_id = event.calendar_id
        self.user_id = event.user_id
        self.account_id = event.account_id
        self.start_time = event.start
        self.end_time = event.end
        self.duration_ms = _to_ms(event.duration)
        self.busy = event.busy
        self.recurrence = (
            event.recurrence.model_dump(mode="json", exclude_none=True)
            if event.recurrence is not None
            else None
        )
        self.exceptions = [
            override.model_dump(mode="json", exclude_none=True)
            for override in event.exceptions
        ]
        self.has_modified_overrides = any(
            not override.cancelled
            and (override.start is not None or override.duration is not None)
            for override in event.exceptions
        )
        self.reminder_offsets = [_to_ms(offset) for offset in event.reminders]
        self.remote_id = event.remote_id

    @classmethod
    def from_domain(cls, event: models.CalendarEvent) -> "Event":
        row = cls(id=event.id)
        row.apply(event)
        return row

    def to_domain(self) -> models.CalendarEvent:
        return models.CalendarEvent(
            id=self.id,
            user_id=self.user_id,
            calendar_id=self.calendar_id,
            account_id=self.account_id,
            start=ensure_utc(self.start_time),
            duration=timedelta(milliseconds=self.duration_ms),
            busy=self.busy,
            recurrence=(
                models.RecurrenceRule.model_validate(self.recurrence)
                if self.recurrence
                else None
            ),
            exceptions=[
                models.ExceptionOverride.model_validate(item)
                for item in self.exceptions or []
            ],
            reminders=[timedelta(milliseconds=ms) for ms in self.reminder_offsets or []],
            remote_id=self.remote_id,
        )


class EventReminder(Base):
    """
    Materialized reminder trigger.
    At most one row per (event, trigger instant), which makes re-running an
    expansion batch harmless.
    """

    __tablename__ = "calendar_event_reminders"
    __table_args__ = (
        UniqueConstraint("event_id", "remind_at", name="uq_event_reminder_remind_at"),
        Index("ix_event_reminder_remind_at", "remind_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    remind_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_domain(self) -> models.Reminder:
        return models.Reminder(
            id=self.id,
            event_id=self.event_id,
            account_id=self.account_id,
            remind_at=ensure_utc(self.remind_at),
        )


class ReminderWatermark(Base):
    """How far into the future an event's reminders have been materialized."""

    __tablename__ = "event_reminder_watermarks"

    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), primary_key=True
    )
    expanded_until: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def to_domain(self) -> models.ExpansionWatermark:
        return models.ExpansionWatermark(
            event_id=self.event_id,
            expanded_until=ensure_utc(self.expanded_until),
            version=self.version,
        )
