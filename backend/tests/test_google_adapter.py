"""Google Calendar adapter tests over a mocked HTTP transport."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from services.calendar.core.models import (
    CalendarEvent,
    CalendarSettings,
    CalendarView,
    ExceptionOverride,
    Frequency,
    RecurrenceRule,
)
from services.calendar.sync.base import SourceFailure
from services.calendar.sync.google import GoogleCalendarAdapter, event_to_google


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


VIEW = CalendarView.create(utc(2024, 1, 1), utc(2024, 1, 2))


def make_adapter(handler, access_token="token-123"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarAdapter(
        access_token, http_client=client, base_url="https://calendar.test/v3"
    ), client


def recurring_event() -> CalendarEvent:
    return CalendarEvent(
        id="event-1",
        user_id="user-1",
        calendar_id="cal-1",
        account_id="account-1",
        start=utc(2024, 1, 1, 9),
        duration=timedelta(minutes=30),
        recurrence=RecurrenceRule(frequency=Frequency.weekly, by_weekday=(0, 2)),
        exceptions=[
            ExceptionOverride(original_start=utc(2024, 1, 3, 9), cancelled=True),
            ExceptionOverride(occurrence_index=4, cancelled=True),
        ],
        reminders=[timedelta(minutes=15)],
    )


class TestEventToGoogle:
    def test_recurring_event_body(self):
        body = event_to_google(recurring_event())

        assert body["start"] == {"dateTime": "2024-01-01T09:00:00Z", "timeZone": "UTC"}
        assert body["end"] == {"dateTime": "2024-01-01T09:30:00Z", "timeZone": "UTC"}
        assert body["transparency"] == "opaque"
        # Occurrence 4 of a Monday/Wednesday series is Monday 2024-01-15.
        assert body["recurrence"] == [
            "RRULE:FREQ=WEEKLY;BYDAY=MO,WE",
            "EXDATE:20240103T090000Z,20240115T090000Z",
        ]
        assert body["reminders"] == {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": 15}],
        }

    def test_moved_occurrences_become_exdate_and_rdate(self):
        event = recurring_event().model_copy(
            update={
                "exceptions": [
                    ExceptionOverride(occurrence_index=2, start=utc(2024, 1, 9, 14)),
                    ExceptionOverride(
                        original_start=utc(2024, 1, 10, 9), start=utc(2024, 1, 10, 7)
                    ),
                ]
            }
        )

        body = event_to_google(event)

        assert body["recurrence"][1:] == [
            "EXDATE:20240108T090000Z,20240110T090000Z",
            "RDATE:20240109T140000Z,20240110T070000Z",
        ]

    def test_first_matching_override_wins(self):
        event = recurring_event().model_copy(
            update={
                "exceptions": [
                    ExceptionOverride(occurrence_index=1, start=utc(2024, 1, 4, 9)),
                    ExceptionOverride(original_start=utc(2024, 1, 3, 9), cancelled=True),
                ]
            }
        )

        body = event_to_google(event)

        assert body["recurrence"][1:] == [
            "EXDATE:20240103T090000Z",
            "RDATE:20240104T090000Z",
        ]

    def test_duration_overrides_are_not_sent(self):
        event = recurring_event().model_copy(
            update={
                "exceptions": [
                    ExceptionOverride(
                        occurrence_index=1,
                        start=utc(2024, 1, 3, 10),
                        duration=timedelta(hours=2),
                    ),
                    # Tuesdays are not part of the series.
                    ExceptionOverride(original_start=utc(2024, 1, 2, 9), cancelled=True),
                ]
            }
        )

        body = event_to_google(event)

        assert body["recurrence"] == ["RRULE:FREQ=WEEKLY;BYDAY=MO,WE"]

    def test_index_resolution_follows_calendar_timezone(self):
        event = recurring_event().model_copy(
            update={
                "start": utc(2024, 3, 29, 9),
                "recurrence": RecurrenceRule(frequency=Frequency.daily),
                "exceptions": [ExceptionOverride(occurrence_index=3, cancelled=True)],
            }
        )

        body = event_to_google(event, CalendarSettings(timezone="Europe/Berlin"))

        assert body["start"]["timeZone"] == "Europe/Berlin"
        # 10:00 Berlin wall time is 08:00 UTC after the DST switch.
        assert body["recurrence"][1] == "EXDATE:20240401T080000Z"

    def test_sub_second_until_keeps_the_last_occurrence(self):
        event = recurring_event().model_copy(
            update={
                "start": utc(2024, 1, 1, 9, 0, 0, 500000),
                "recurrence": RecurrenceRule(
                    frequency=Frequency.daily, until=utc(2024, 1, 3, 9, 0, 0, 250000)
                ),
                "exceptions": [],
            }
        )

        body = event_to_google(event)

        # The 2024-01-03 09:00:00.5 occurrence lies past UNTIL.
        assert body["recurrence"] == ["RRULE:FREQ=DAILY;UNTIL=20240103T085959Z"]

    def test_single_transparent_event_body(self):
        event = recurring_event().model_copy(
            update={"recurrence": None, "exceptions": [], "reminders": [], "busy": False}
        )

        body = event_to_google(event)

        assert body["transparency"] == "transparent"
        assert "recurrence" not in body
        assert "reminders" not in body
        assert "status" not in body

    def test_single_event_override_is_applied(self):
        moved = recurring_event().model_copy(
            update={
                "recurrence": None,
                "exceptions": [
                    ExceptionOverride(occurrence_index=0, start=utc(2024, 1, 1, 11))
                ],
            }
        )
        cancelled = moved.model_copy(
            update={"exceptions": [ExceptionOverride(occurrence_index=0, cancelled=True)]}
        )

        moved_body = event_to_google(moved)
        cancelled_body = event_to_google(cancelled)

        assert moved_body["start"]["dateTime"] == "2024-01-01T11:00:00Z"
        assert moved_body["end"]["dateTime"] == "2024-01-01T11:30:00Z"
        assert cancelled_body["status"] == "cancelled"


@pytest.mark.asyncio
class TestGoogleCalendarAdapter:
    async def test_fetch_busy_parses_freebusy_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "calendars": {
                        "primary": {
                            "busy": [
                                {"start": "2024-01-01T15:00:00Z", "end": "2024-01-01T16:00:00Z"},
                                {"start": "2024-01-01T10:00:00+01:00", "end": "2024-01-01T10:30:00+01:00"},
                            ]
                        }
                    }
                },
            )

        adapter, client = make_adapter(handler)
        async with client:
            busy = await adapter.fetch_busy("primary", VIEW)

        assert seen["url"] == "https://calendar.test/v3/freeBusy"
        assert seen["auth"] == "Bearer token-123"
        assert seen["body"] == {
            "timeMin": "2024-01-01T00:00:00Z",
            "timeMax": "2024-01-02T00:00:00Z",
            "items": [{"id": "primary"}],
        }
        assert [(b.start, b.end) for b in busy] == [
            (utc(2024, 1, 1, 9), utc(2024, 1, 1, 9, 30)),
            (utc(2024, 1, 1, 15), utc(2024, 1, 1, 16)),
        ]

    async def test_error_status_becomes_failure(self):
        def handler(request):
            return httpx.Response(403, json={"error": {"message": "Rate Limit Exceeded"}})

        adapter, client = make_adapter(handler)
        async with client:
            result = await adapter.fetch_busy("primary", VIEW)

        assert isinstance(result, SourceFailure)
        assert "Rate Limit Exceeded" in result.reason
        assert result.as_error().status_code == 503

    async def test_calendar_level_errors_become_failure(self):
        def handler(request):
            return httpx.Response(
                200, json={"calendars": {"primary": {"errors": [{"reason": "notFound"}]}}}
            )

        adapter, client = make_adapter(handler)
        async with client:
            result = await adapter.fetch_busy("primary", VIEW)

        assert isinstance(result, SourceFailure)
        assert "notFound" in result.reason

    async def test_network_error_becomes_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter, client = make_adapter(handler)
        async with client:
            result = await adapter.fetch_busy("primary", VIEW)

        assert isinstance(result, SourceFailure)

    async def test_push_event(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.raw_path.decode()
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "google-event-9"})

        async def token():
            return "fresh-token"

        adapter, client = make_adapter(handler, access_token=token)
        async with client:
            remote_id = await adapter.push_event("team@example.com", recurring_event())

        assert remote_id == "google-event-9"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v3/calendars/team%40example.com/events"
        assert seen["body"]["recurrence"][0] == "RRULE:FREQ=WEEKLY;BYDAY=MO,WE"

    async def test_remove_missing_event_counts_as_removed(self):
        def handler(request):
            assert request.method == "DELETE"
            return httpx.Response(404, json={"error": {"message": "Not Found"}})

        adapter, client = make_adapter(handler)
        async with client:
            assert await adapter.remove_event("primary", "gone") is None

    async def test_remove_server_error_is_failure(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        adapter, client = make_adapter(handler)
        async with client:
            result = await adapter.remove_event("primary", "abc")

        assert isinstance(result, SourceFailure)
        assert "HTTP 500" in result.reason

    async def test_remove_event_request(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.raw_path.decode()
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(410)

        adapter, client = make_adapter(handler)
        async with client:
            result = await adapter.remove_event("team@example.com", "abc/1")

        assert result is None
        assert seen == {
            "method": "DELETE",
            "path": "/v3/calendars/team%40example.com/events/abc%2F1",
            "auth": "Bearer token-123",
        }

    async def test_push_event_resolves_overrides_in_calendar_timezone(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "google-event-10"})

        event = recurring_event().model_copy(
            update={
                "start": utc(2024, 3, 29, 9),
                "recurrence": RecurrenceRule(frequency=Frequency.daily),
                "exceptions": [ExceptionOverride(occurrence_index=3, cancelled=True)],
            }
        )
        adapter, client = make_adapter(handler)
        async with client:
            await adapter.push_event(
                "primary", event, CalendarSettings(timezone="Europe/Berlin")
            )

        assert seen["body"]["recurrence"] == [
            "RRULE:FREQ=DAILY",
            "EXDATE:20240401T080000Z",
        ]
