"""
Base class for external calendar source adapters.

Adapters fetch busy intervals from, and push event writes to, a calendar whose
true state lives in an external provider. The public methods never raise:
every failure (network, auth, rate limiting, malformed payloads) comes back as
an opaque ``SourceFailure`` so callers only ever see available vs unavailable.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from ..core.errors import SourceUnavailable
from ..core.models import BusyInterval, CalendarEvent, CalendarSettings, CalendarView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFailure:
    """Opaque failure returned by an adapter call."""

    source_calendar_id: str
    reason: str = "unavailable"

    def as_error(self) -> SourceUnavailable:
        return SourceUnavailable(self.source_calendar_id, self.reason)


BusyResult = Union[list[BusyInterval], SourceFailure]
PushResult = Union[str, SourceFailure]
RemoveResult = Union[None, SourceFailure]


class ExternalSourceAdapter(ABC):
    """
    Abstract base class for external calendar sources.

    Implementations provide the ``_fetch_busy``, ``_push_event`` and
    ``_remove_event`` hooks and may raise freely from them; the public
    wrappers convert any exception into a ``SourceFailure``.
    """

    #: Provider key matched against a calendar's synced source.
    provider: str = ""

    async def fetch_busy(self, source_calendar_id: str, view: CalendarView) -> BusyResult:
        """
        Fetch busy intervals on the external calendar within the view.

        Returns:
            Intervals ordered by start, or a SourceFailure
        """
        try:
            intervals = await self._fetch_busy(source_calendar_id, view)
        except Exception as exc:
            return self._failure("fetch_busy", source_calendar_id, exc)
        return sorted(intervals, key=lambda interval: (interval.start, interval.end))

    async def push_event(
        self,
        source_calendar_id: str,
        event: CalendarEvent,
        settings: Optional[CalendarSettings] = None,
    ) -> PushResult:
        """
        Create the event on the external calendar.

        ``settings`` are the local calendar's, used to resolve its recurrence.

        Returns:
            The remote event id, or a SourceFailure
        """
        try:
            return await self._push_event(source_calendar_id, event, settings)
        except Exception as exc:
            return self._failure("push_event", source_calendar_id, exc)

    async def remove_event(self, source_calendar_id: str, remote_id: str) -> RemoveResult:
        """
        Delete a previously pushed event from the external calendar.

        Returns:
            None on success, or a SourceFailure
        """
        try:
            await self._remove_event(source_calendar_id, remote_id)
        except Exception as exc:
            return self._failure("remove_event", source_calendar_id, exc)
        return None

    async def aclose(self) -> None:
        """Release any resources held by the adapter."""

    def _failure(self, operation: str, source_calendar_id: str, exc: Exception) -> SourceFailure:
        logger.warning(
            "%s adapter %s failed for calendar %s: %s",
            self.provider or type(self).__name__,
            operation,
            source_calendar_id,
            exc,
        )
        return SourceFailure(
            source_calendar_id=source_calendar_id,
            reason=str(exc) or type(exc).__name__,
        )

    @abstractmethod
    async def _fetch_busy(
        self, source_calendar_id: str, view: CalendarView
    ) -> list[BusyInterval]:
        pass

    @abstractmethod
    async def _push_event(
        self,
        source_calendar_id: str,
        event: CalendarEvent,
        settings: Optional[CalendarSettings],
    ) -> str:
        pass

    @abstractmethod
    async def _remove_event(self, source_calendar_id: str, remote_id: str) -> None:
        pass
