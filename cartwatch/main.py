"""Worker entry point."""

import asyncio
import logging
import signal
from contextlib import suppress

from prometheus_client import start_http_server

from cartwatch.agent.client import remote_agent
from cartwatch.config import settings
from cartwatch.db.session import engine, init_db
from cartwatch.ingest.session_manager import session_manager
from cartwatch.notify.live_updates import live_updates
from cartwatch.notify.notifier import price_notifier
from cartwatch.worker.scheduler import setup_scheduler
from cartwatch.worker.tasks import task_runner

# Configure structured logging
from cartwatch.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


async def run():
    """Start the scheduler and block until SIGINT/SIGTERM."""
    logger.info("Starting cart monitor worker...")

    await init_db()

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Metrics exposed on port {settings.metrics_port}")

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    # First pass immediately rather than after one full interval
    first_run = asyncio.create_task(task_runner.run_all_accounts())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        scheduler.shutdown(wait=False)
        if not first_run.done():
            first_run.cancel()
            with suppress(asyncio.CancelledError):
                await first_run

        await session_manager.close()
        await price_notifier.close()
        await live_updates.close()
        await remote_agent.close()
        await engine.dispose()
        logger.info("Shutdown complete")


def main():
    with suppress(KeyboardInterrupt):
        asyncio.run(run())


if __name__ == "__main__":
    main()
