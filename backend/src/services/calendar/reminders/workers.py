"""
Worker pool consuming event changes.

Changes are queued by the mutation path and processed by ``worker_count``
asyncio workers. Jobs for the same event id never overlap inside one process;
across processes the watermark compare-and-swap keeps a single writer.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from ..core.errors import CalendarEngineError
from ..core.models import CalendarEvent
from .materializer import EventChange, EventOperation, ExpansionOutcome, ReminderMaterializer

logger = logging.getLogger(__name__)


class ReminderWorkerPool:
    def __init__(self, materializer: ReminderMaterializer, worker_count: int = 4):
        self.materializer = materializer
        self.worker_count = max(1, worker_count)
        self._queue: "asyncio.Queue[EventChange]" = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            logger.warning("Reminder worker pool already running")
            return
        self._workers = [
            asyncio.create_task(self._worker(index)) for index in range(self.worker_count)
        ]
        logger.info("Reminder worker pool started (%d workers)", self.worker_count)

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Reminder worker pool stopped")

    def on_event_changed(
        self, event: CalendarEvent, operation: EventOperation
    ) -> EventChange:
        """Queue a change for background processing. Non-blocking."""
        change = EventChange.of(event, operation)
        self._queue.put_nowait(change)
        return change

    async def submit(self, change: EventChange) -> None:
        await self._queue.put(change)

    async def join(self) -> None:
        """Wait until every queued change has been processed."""
        await self._queue.join()

    async def process(self, change: EventChange) -> ExpansionOutcome:
        """Run one change now, serialized with other jobs for the same event."""
        async with self._event_lock(change.event_id):
            return await asyncio.to_thread(self.materializer.handle, change)

    @asynccontextmanager
    async def _event_lock(self, event_id: str):
        lock = self._locks.get(event_id)
        if lock is None:
            lock = self._locks[event_id] = asyncio.Lock()
        self._lock_users[event_id] = self._lock_users.get(event_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[event_id] -= 1
            if not self._lock_users[event_id]:
                del self._lock_users[event_id]
                del self._locks[event_id]

    async def _worker(self, index: int) -> None:
        logger.debug("Reminder worker %d started", index)
        while True:
            change = await self._queue.get()
            try:
                outcome = await self.process(change)
                logger.debug(
                    "Worker %d handled %s for event %s: %s",
                    index,
                    change.operation.value,
                    change.event_id,
                    outcome.value,
                )
            except CalendarEngineError as exc:
                logger.error(
                    "Reminder job %s for event %s failed: %s",
                    change.operation.value,
                    change.event_id,
                    exc.message,
                )
            except Exception as exc:
                logger.error(
                    "Unexpected error in reminder job for event %s: %s",
                    change.event_id,
                    exc,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
