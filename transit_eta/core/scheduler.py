"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(tracker) -> AsyncIOScheduler:
    """Vehicle polling plus the daily static data refresh."""
    from transit_eta.config import settings

    scheduler = AsyncIOScheduler()

    # Missed polls are collapsed into one; a late poll is only useful within one interval
    scheduler.add_job(
        tracker.poll_vehicles,
        "interval",
        seconds=settings.poll_interval_seconds,
        id="poll_vehicles",
        name="Poll Tranzy vehicle positions",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=settings.poll_interval_seconds,
    )

    scheduler.add_job(
        tracker.load_static_data,
        "interval",
        hours=settings.static_refresh_hours,
        id="refresh_static_data",
        name="Refresh stops, trips, stop times and shapes",
        max_instances=1,
        coalesce=True,
    )

    logger.debug(
        "Scheduler configured: poll every %ds, static refresh every %dh",
        settings.poll_interval_seconds, settings.static_refresh_hours,
    )
    return scheduler
