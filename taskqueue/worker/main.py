"""
Worker process for executing tasks.

The worker takes the host's process lock, then claims due tasks, runs
them through the handler registry and records the outcome. It either
drains the queue once and exits (cron style) or keeps polling.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys

from taskqueue.config import get_settings
from taskqueue.db import close_db, get_engine, init_db
from taskqueue.lock import ProcessLock
from taskqueue.observability.logging import bind_context, clear_context, setup_logging
from taskqueue.observability.metrics import setup_metrics
from taskqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from taskqueue.store import TaskStore
from taskqueue.types.task import HandlerFunc, TaskHandler
from taskqueue.worker.handlers import registry

logger = logging.getLogger(__name__)


class Worker:
    """
    Task worker that polls for and executes tasks.

    Features:
    - One worker per host, enforced with a ProcessLock
    - Atomic claims through TaskStore.process_batch
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        store: TaskStore,
        handler: TaskHandler | HandlerFunc = registry,
        lock: ProcessLock | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        only_type: str | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: Task store to consume from.
            handler: Handler or registry that executes tasks.
            lock: Process lock; defaults to the lock configured in settings.
            batch_size: Number of tasks to claim per batch.
            poll_interval: Seconds between polls when the queue is empty.
            only_type: Only process tasks with this payload type.
        """
        settings = get_settings()

        self.store = store
        self.handler = handler
        self.lock = lock or ProcessLock()
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.only_type = only_type if only_type is not None else settings.worker_only_type
        self.worker_id = f"{os.uname().nodename}-{os.getpid()}"

        self._running = False
        self._stop_requested = False

    async def drain(self) -> int:
        """
        Process batches until a batch claims nothing. The lock must be held.

        Returns:
            Number of tasks processed.
        """
        processed = 0
        while not self._stop_requested:
            result = await self.store.process_batch(
                self.handler,
                limit=self.batch_size,
                only_type=self.only_type,
            )
            if not result:
                break
            processed += result.claimed
            logger.info(
                "Processed batch",
                extra={
                    "completed": len(result.completed),
                    "failed": len(result.failed),
                    "lost": len(result.lost),
                },
            )
        return processed

    async def run_once(self) -> int:
        """
        Drain the queue once under the process lock.

        Returns:
            Number of tasks processed; 0 when another worker holds the lock.
        """
        if not self.lock.acquire():
            logger.info("Another worker is running, exiting", extra={"lock": str(self.lock.path)})
            return 0
        try:
            return await self.drain()
        finally:
            self.lock.release()

    async def start(self) -> None:
        """Poll until stopped, holding the process lock throughout."""
        if not self.lock.acquire():
            logger.info("Another worker is running, exiting", extra={"lock": str(self.lock.path)})
            return

        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.batch_size},
        )
        self._running = True
        self._stop_requested = False
        try:
            while self._running:
                try:
                    processed = await self.drain()
                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_id": self.worker_id},
                    )
                    processed = 0

                if processed == 0 and self._running:
                    await asyncio.sleep(self.poll_interval)
        finally:
            self.lock.release()

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the current batch."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_requested = True


def load_handler_modules(modules: list[str]) -> None:
    """Import modules that register handlers on the default registry."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded handler module {module}")


async def run_async() -> int:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.prometheus_port)
    setup_tracing()
    load_handler_modules(settings.worker_handler_modules)
    session_factory = await init_db()
    if settings.otel_enabled:
        instrument_sqlalchemy(get_engine())

    store = TaskStore(session_factory, settings=settings)
    if settings.auto_install:
        await store.install()

    worker = Worker(store)
    bind_context(worker_id=worker.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        if settings.worker_run_once:
            processed = await worker.run_once()
            logger.info("Queue drained", extra={"processed": processed})
        else:
            await worker.start()
    finally:
        clear_context()
        await close_db()
    return 0


def run() -> None:
    """Run the worker."""
    sys.exit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
