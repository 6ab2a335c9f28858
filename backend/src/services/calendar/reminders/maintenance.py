"""
Periodic reminder maintenance.

Every cycle runs the retention sweep (due reminders are dispatched and
deleted) and queues a refresh for every event whose watermark is about to
fall inside the refresh margin, keeping a rolling horizon.
"""

import asyncio
import logging
import time
from typing import Optional

from .materializer import EventChange, ReminderDispatcher, ReminderMaterializer
from .workers import ReminderWorkerPool

logger = logging.getLogger(__name__)


class ReminderMaintenanceService:
    def __init__(
        self,
        materializer: ReminderMaterializer,
        worker_pool: ReminderWorkerPool,
        dispatcher: Optional[ReminderDispatcher] = None,
        interval_seconds: float = 60.0,
    ):
        self.materializer = materializer
        self.worker_pool = worker_pool
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Reminder maintenance service already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._maintenance_loop())
        logger.info(
            "Reminder maintenance service started (interval: %ss)", self.interval_seconds
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reminder maintenance service stopped")

    async def run_cycle(self) -> tuple[int, int]:
        """Run one sweep and one refresh pass. Returns (swept, refreshed)."""
        swept = await self._run_retention_sweep()
        refreshed = await self._run_refresh_sweep()
        return swept, refreshed

    async def _maintenance_loop(self) -> None:
        logger.debug("Reminder maintenance loop started")
        try:
            while self._running:
                cycle_start = time.monotonic()
                await self.run_cycle()

                elapsed = time.monotonic() - cycle_start
                sleep_time = max(0.0, self.interval_seconds - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)
        except asyncio.CancelledError:
            logger.debug("Reminder maintenance loop cancelled")
            raise
        finally:
            self._running = False

    async def _run_retention_sweep(self) -> int:
        try:
            removed = await asyncio.to_thread(self.materializer.sweep, self.dispatcher)
        except Exception as exc:
            # Nothing was deleted; the same rows are picked up next cycle.
            logger.error("Retention sweep failed: %s", exc, exc_info=True)
            return 0
        return len(removed)

    async def _run_refresh_sweep(self) -> int:
        try:
            due = await asyncio.to_thread(self.materializer.due_for_refresh)
        except Exception as exc:
            logger.error("Refresh sweep failed: %s", exc, exc_info=True)
            return 0
        for event_id in due:
            await self.worker_pool.submit(EventChange.refresh(event_id))
        if due:
            logger.info("Queued reminder refresh for %d events", len(due))
        return len(due)
