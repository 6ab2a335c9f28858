import asyncio
import logging
import os
from typing import Mapping, Optional

from scheduler_platform.config import load_settings
from scheduler_platform.logging_config import setup_logging
from services.calendar.engine import SchedulerEngine
from services.calendar.sync.google import GoogleCalendarAdapter

logger = logging.getLogger(__name__)


def create_scheduler(environ: Optional[Mapping[str, str]] = None) -> SchedulerEngine:
    settings = load_settings(environ)
    environ = os.environ if environ is None else environ

    adapters = []
    google_token = environ.get("GOOGLE_CALENDAR_ACCESS_TOKEN")
    if google_token:
        adapters.append(GoogleCalendarAdapter(google_token))

    scheduler = SchedulerEngine.from_settings(settings, adapters=adapters)
    logger.info(
        "Scheduler configured (horizon: %s, workers: %d, sweep interval: %ss)",
        settings.reminder_horizon,
        settings.worker_count,
        settings.sweep_interval,
    )
    return scheduler


async def run(environ: Optional[Mapping[str, str]] = None) -> None:
    scheduler = create_scheduler(environ)
    await scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


if __name__ == "__main__":
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    asyncio.run(run())
