"""APScheduler setup for periodic tasks."""

import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(orchestrator) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs.

    Every job starts immediately. The orchestrator serialises the jobs, so a
    slow refresh delays the others instead of overlapping with them.
    """
    from rtbridge.config import settings

    scheduler = AsyncIOScheduler()
    now = datetime.datetime.now(datetime.timezone.utc)

    scheduler.add_job(
        orchestrator.refresh_buses,
        "interval",
        seconds=settings.bus_refresh_interval_seconds,
        id="refresh_buses",
        name="Poll TransitView for bus positions",
        max_instances=1,
        coalesce=True,
        next_run_time=now,
    )

    scheduler.add_job(
        orchestrator.refresh_trains,
        "interval",
        seconds=settings.rail_refresh_interval_seconds,
        id="refresh_trains",
        name="Poll TrainView for train positions",
        max_instances=1,
        coalesce=True,
        next_run_time=now,
    )

    scheduler.add_job(
        orchestrator.expire_stale,
        "interval",
        seconds=settings.expire_sweep_interval_seconds,
        id="expire_stale",
        name="Delete entities not refreshed within the expiry timeout",
        max_instances=1,
        coalesce=True,
        next_run_time=now,
    )

    return scheduler
