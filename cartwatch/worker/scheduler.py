"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cartwatch.config import settings
from cartwatch.worker.tasks import task_runner

logger = logging.getLogger(__name__)

SESSION_SWEEP_INTERVAL_SECONDS = 60


async def sweep_idle_sessions():
    """Dispose browser sessions idle longer than the configured TTL."""
    swept = await task_runner.sessions.sweep_idle()
    if swept:
        logger.info(f"Idle sweep disposed {swept} session(s)")


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Cart scrapes for every active account at settings.scrape_interval_minutes
    - Idle browser session sweep every minute

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    scrape_interval = max(1, int(settings.scrape_interval_minutes))

    scheduler.add_job(
        task_runner.run_all_accounts,
        IntervalTrigger(minutes=scrape_interval),
        id="cart_scrape",
        name="Scrape carts and reconcile prices",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        sweep_idle_sessions,
        IntervalTrigger(seconds=SESSION_SWEEP_INTERVAL_SECONDS),
        id="session_sweep",
        name="Dispose idle browser sessions",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: cart scrape every %d minutes, session sweep every %d seconds",
        scrape_interval,
        SESSION_SWEEP_INTERVAL_SECONDS,
    )

    return scheduler
