"""
Stale lock reaper.

Claims made by a consumer that crashed stay in_progress forever unless
someone returns them to the queue. Consumers already reclaim stale rows
when they claim; the reaper makes recovery independent of claim traffic and
keeps the in_progress count honest for monitoring.
"""

import asyncio
import logging
import signal

from taskqueue.config import get_settings
from taskqueue.db import close_db, init_db
from taskqueue.observability.logging import setup_logging
from taskqueue.observability.metrics import setup_metrics
from taskqueue.store import TaskStore

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodically returns tasks with stale locks to pending.
    """

    def __init__(self, store: TaskStore, interval_seconds: int | None = None):
        """
        Initialize the reaper.

        Args:
            store: Task store to sweep.
            interval_seconds: Seconds between reaper runs.
        """
        settings = get_settings()
        self.store = store
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Sweep stale locks once (for testing or cron-style execution).

        Returns:
            Number of tasks recovered.
        """
        recovered = await self.store.reclaim_stale_locks()
        if recovered > 0:
            logger.info(f"Recovered {recovered} stale task locks")

        # Refreshes the queue depth gauge
        stats = await self.store.get_stats()
        logger.debug("Queue status", extra=stats)
        return recovered


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.prometheus_port)
    session_factory = await init_db()

    reaper = Reaper(TaskStore(session_factory, settings=settings))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
