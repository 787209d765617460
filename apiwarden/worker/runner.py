"""Standalone scheduler process loop."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from apiwarden.runner.locks import Locker
    from apiwarden.runner.task_runner import TaskRunner
    from apiwarden.scheduler.scheduler import TaskScheduler

logger = structlog.get_logger(__name__)


class SchedulerWorker:
    """Runs the scheduler outside the web process.

    Handles SIGTERM/SIGINT for graceful shutdown: the scheduler stops
    ticking, active runs are cancelled and finalized, locks are released.
    """

    def __init__(self, scheduler: TaskScheduler, runner: TaskRunner, locker: Locker) -> None:
        self._scheduler = scheduler
        self._runner = runner
        self._locker = locker

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown)

        await self._scheduler.load()
        logger.info("scheduler_worker_started", entries=len(self._scheduler.entries))
        try:
            await self._scheduler.run()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self._runner.shutdown()
            await self._locker.close()
        logger.info("scheduler_worker_stopped")

    def _shutdown(self) -> None:
        """Signal handler for graceful shutdown."""
        logger.info("scheduler_worker_shutdown_requested")
        self._scheduler.stop()
