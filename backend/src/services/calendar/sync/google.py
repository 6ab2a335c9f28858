"""
Google Calendar source adapter.

Talks to the Google Calendar v3 REST API over httpx: freeBusy queries for
availability, event insert/delete for pushing local writes to the synced
calendar.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Collection, Optional, Union
from urllib.parse import quote

import httpx

from ..core.errors import SourceUnavailable
from ..core.models import (
    BusyInterval,
    CalendarEvent,
    CalendarSettings,
    CalendarView,
    ExceptionOverride,
)
from ..core.recurrence import RecurrenceEvaluator
from ..core.utils import format_rfc3339, parse_rfc3339
from .base import ExternalSourceAdapter

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Already gone remotely.
REMOVED_STATUSES = frozenset({404, 410})

TokenProvider = Callable[[], Awaitable[str]]


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"][:200]
    return f"HTTP {response.status_code}"


def _ical_instant(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def resolve_overrides(
    event: CalendarEvent,
    settings: Optional[CalendarSettings] = None,
    evaluator: Optional[RecurrenceEvaluator] = None,
) -> list[tuple[datetime, ExceptionOverride]]:
    """
    Pair each overridden occurrence's original start with the override that
    applies to it, ordered by occurrence. The first matching override wins,
    as in expansion; overrides that match no occurrence are dropped.
    """
    evaluator = evaluator or RecurrenceEvaluator()
    resolved: dict[int, tuple[datetime, ExceptionOverride]] = {}
    for override in event.exceptions:
        occurrence = evaluator.find_occurrence(
            event.start,
            event.recurrence,
            settings,
            index=override.occurrence_index,
            original_start=override.original_start,
        )
        if occurrence is None:
            logger.debug(
                "Not sending override on event %s: no such occurrence (index=%s, start=%s)",
                event.id,
                override.occurrence_index,
                override.original_start,
            )
            continue
        resolved.setdefault(occurrence.index, (occurrence.start, override))
    return [resolved[index] for index in sorted(resolved)]


def event_to_google(
    event: CalendarEvent,
    settings: Optional[CalendarSettings] = None,
    evaluator: Optional[RecurrenceEvaluator] = None,
) -> dict[str, Any]:
    """
    Translate an event into a Google Calendar event resource.

    Cancelled occurrences become EXDATE entries and moved occurrences an
    EXDATE/RDATE pair. An override that changes an occurrence's duration has
    no recurrence-line form; that occurrence is sent as the series defines it.
    A single event's own override is applied to the resource directly.
    """
    settings = settings or CalendarSettings()
    overrides = resolve_overrides(event, settings, evaluator)

    start, end = event.start, event.end
    cancelled = False
    if event.recurrence is None and overrides:
        _, override = overrides[0]
        cancelled = override.cancelled
        start = override.start or event.start
        end = start + (override.duration or event.duration)

    body: dict[str, Any] = {
        "start": {"dateTime": format_rfc3339(start), "timeZone": settings.timezone},
        "end": {"dateTime": format_rfc3339(end), "timeZone": settings.timezone},
        "transparency": "opaque" if event.busy else "transparent",
    }
    if cancelled:
        body["status"] = "cancelled"

    if event.recurrence is not None:
        rule = event.recurrence
        if rule.until is not None and event.start.microsecond:
            # Instants go out at second resolution. Shifting UNTIL by the
            # occurrences' sub-second offset keeps the last one on the same side.
            until = rule.until - timedelta(microseconds=event.start.microsecond)
            rule = rule.model_copy(update={"until": until})

        excluded: list[datetime] = []
        added: list[datetime] = []
        for original_start, override in overrides:
            if override.cancelled:
                excluded.append(original_start)
            elif override.duration is not None and override.duration != event.duration:
                logger.warning(
                    "Event %s: override of %s changes its duration, sending it unmodified",
                    event.id,
                    original_start,
                )
            elif override.start is not None and override.start != original_start:
                excluded.append(original_start)
                added.append(override.start)

        recurrence = [rule.to_rrule_string()]
        if excluded:
            recurrence.append("EXDATE:" + ",".join(_ical_instant(dt) for dt in excluded))
        if added:
            recurrence.append(
                "RDATE:" + ",".join(_ical_instant(dt) for dt in sorted(added))
            )
        body["recurrence"] = recurrence
    if event.reminders:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": int(offset.total_seconds() // 60)}
                for offset in event.reminders
            ],
        }
    return body


class GoogleCalendarAdapter(ExternalSourceAdapter):
    """
    Google Calendar adapter.

    Args:
        access_token: Bearer token, or an async callable returning one
        http_client: Optional shared client (closed by the caller)
        base_url: API root, overridable for tests
        evaluator: Resolves index-addressed overrides in pushed events
    """

    provider = "google"

    def __init__(
        self,
        access_token: Union[str, TokenProvider],
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        timeout: float = 30.0,
        evaluator: Optional[RecurrenceEvaluator] = None,
    ):
        self._access_token = access_token
        self._evaluator = evaluator or RecurrenceEvaluator()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _token(self) -> str:
        if isinstance(self._access_token, str):
            return self._access_token
        return await self._access_token()

    async def _request(
        self,
        method: str,
        path: str,
        source_calendar_id: str,
        json_body: Optional[dict[str, Any]] = None,
        allowed_statuses: Collection[int] = (),
    ) -> httpx.Response:
        """Send an authorized request; non-2xx statuses outside ``allowed_statuses`` raise."""
        headers = {"Authorization": f"Bearer {await self._token()}"}
        response = await self._http_client.request(
            method, f"{self._base_url}{path}", json=json_body, headers=headers
        )
        if response.status_code in allowed_statuses:
            return response
        if response.status_code < 200 or response.status_code >= 300:
            raise SourceUnavailable(source_calendar_id, _error_message(response))
        return response

    async def _fetch_busy(
        self, source_calendar_id: str, view: CalendarView
    ) -> list[BusyInterval]:
        body = {
            "timeMin": format_rfc3339(view.start),
            "timeMax": format_rfc3339(view.end),
            "items": [{"id": source_calendar_id}],
        }
        response = await self._request("POST", "/freeBusy", source_calendar_id, body)
        payload = response.json()

        entry = payload.get("calendars", {}).get(source_calendar_id)
        if entry is None:
            raise SourceUnavailable(source_calendar_id, "calendar missing from freeBusy response")
        if entry.get("errors"):
            reason = entry["errors"][0].get("reason", "unknown")
            raise SourceUnavailable(source_calendar_id, reason)

        return [
            BusyInterval(
                calendar_id=source_calendar_id,
                start=parse_rfc3339(window["start"]),
                end=parse_rfc3339(window["end"]),
            )
            for window in entry.get("busy", [])
        ]

    async def _push_event(
        self,
        source_calendar_id: str,
        event: CalendarEvent,
        settings: Optional[CalendarSettings] = None,
    ) -> str:
        path = f"/calendars/{quote(source_calendar_id, safe='')}/events"
        body = event_to_google(event, settings, self._evaluator)
        response = await self._request("POST", path, source_calendar_id, body)
        remote_id = response.json().get("id")
        if not remote_id:
            raise SourceUnavailable(source_calendar_id, "insert response missing event id")
        logger.debug(
            "Pushed event %s to Google calendar %s as %s",
            event.id,
            source_calendar_id,
            remote_id,
        )
        return remote_id

    async def _remove_event(self, source_calendar_id: str, remote_id: str) -> None:
        path = (
            f"/calendars/{quote(source_calendar_id, safe='')}"
            f"/events/{quote(remote_id, safe='')}"
        )
        await self._request(
            "DELETE", path, source_calendar_id, allowed_statuses=REMOVED_STATUSES
        )
