# Scheduling engine error taxonomy
# Errors carry a status code and reason so controllers can render them
# without the engine depending on a web framework.

from typing import Any, Optional


# ============================================================================
# ERROR REASONS
# ============================================================================

ERROR_NOT_FOUND = "notFound"
ERROR_INVALID = "invalid"
ERROR_INTERNAL = "internalError"

ERROR_INVALID_WINDOW = "invalidWindow"
ERROR_INVALID_RECURRENCE = "invalidRecurrence"
ERROR_INVALID_SETTINGS = "invalidSettings"
ERROR_CALENDAR_NOT_FOUND = "calendarNotFound"
ERROR_EVENT_NOT_FOUND = "eventNotFound"
ERROR_EXPANSION_CONFLICT = "expansionConflict"
ERROR_EXPANSION_FAILED = "expansionFailed"
ERROR_SOURCE_UNAVAILABLE = "sourceUnavailable"

ERROR_DOMAIN_GLOBAL = "global"
ERROR_DOMAIN_CALENDAR = "calendar"


# ============================================================================
# EXCEPTION CLASSES
# ============================================================================


class CalendarEngineError(Exception):
    """Base exception for scheduling engine errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        reason: str = ERROR_INVALID,
        domain: str = ERROR_DOMAIN_CALENDAR,
        location: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.domain = domain
        self.location = location

    def to_dict(self) -> dict[str, Any]:
        """Convert to Google-style error envelope."""
        error_detail: dict[str, Any] = {
            "domain": self.domain,
            "reason": self.reason,
            "message": self.message,
        }
        if self.location:
            error_detail["location"] = self.location
            error_detail["locationType"] = "parameter"

        return {
            "error": {
                "code": self.status_code,
                "message": self.message,
                "errors": [error_detail],
            }
        }


class InvalidWindow(CalendarEngineError):
    """View construction with start >= end (400)."""

    def __init__(self, start: Any, end: Any):
        super().__init__(
            message=f"The start and end timestamps are invalid: {start} >= {end}",
            status_code=400,
            reason=ERROR_INVALID_WINDOW,
            location="timespan",
        )
        self.start = start
        self.end = end


class UnresolvableRecurrence(CalendarEngineError):
    """Malformed recurrence rule (400)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            status_code=400,
            reason=ERROR_INVALID_RECURRENCE,
            location=field,
        )


class InvalidSettings(CalendarEngineError):
    """Invalid calendar settings (400)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=f"Bad calendar settings provided. Error message: {message}",
            status_code=400,
            reason=ERROR_INVALID_SETTINGS,
            location=field,
        )


class NotFoundError(CalendarEngineError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not Found", reason: str = ERROR_NOT_FOUND):
        super().__init__(message=message, status_code=404, reason=reason)


class CalendarNotFoundError(NotFoundError):
    """Calendar not found."""

    def __init__(self, calendar_id: str):
        super().__init__(
            message=f"The calendar with id: {calendar_id}, was not found.",
            reason=ERROR_CALENDAR_NOT_FOUND,
        )
        self.calendar_id = calendar_id


class EventNotFoundError(NotFoundError):
    """Event not found."""

    def __init__(self, event_id: str):
        super().__init__(
            message=f"The event with id: {event_id}, was not found.",
            reason=ERROR_EVENT_NOT_FOUND,
        )
        self.event_id = event_id


class ExpansionConflict(CalendarEngineError):
    """Concurrent watermark advance lost the compare-and-swap (409).

    Always retried by re-reading the watermark.
    """

    def __init__(self, event_id: str):
        super().__init__(
            message=f"Reminder watermark for event {event_id} was advanced concurrently",
            status_code=409,
            reason=ERROR_EXPANSION_CONFLICT,
        )
        self.event_id = event_id


class ExpansionJobFailed(CalendarEngineError):
    """Reminder expansion gave up after repeated storage failures (500)."""

    def __init__(self, event_id: str, attempts: int):
        super().__init__(
            message=f"Reminder expansion for event {event_id} failed after {attempts} attempts",
            status_code=500,
            reason=ERROR_EXPANSION_FAILED,
        )
        self.event_id = event_id
        self.attempts = attempts


class SourceUnavailable(CalendarEngineError):
    """External calendar source failed (503).

    Network, auth and rate-limit failures all surface as this error.
    """

    def __init__(self, source_calendar_id: str, message: str = "unavailable"):
        super().__init__(
            message=f"External calendar {source_calendar_id} is unavailable: {message}",
            status_code=503,
            reason=ERROR_SOURCE_UNAVAILABLE,
            domain=ERROR_DOMAIN_GLOBAL,
        )
        self.source_calendar_id = source_calendar_id


# ============================================================================
# ERROR HANDLING UTILITIES
# ============================================================================


def error_payload(exc: Exception) -> dict[str, Any]:
    """Convert any exception to an error envelope."""
    if isinstance(exc, CalendarEngineError):
        return exc.to_dict()

    import logging

    logging.getLogger(__name__).error("Unexpected exception: %s", exc, exc_info=True)

    return CalendarEngineError(
        message="Internal Server Error",
        status_code=500,
        reason=ERROR_INTERNAL,
    ).to_dict()
