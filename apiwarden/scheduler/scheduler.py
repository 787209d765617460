"""Cron-driven task scheduler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from apiwarden.exceptions import ConfigError, NotFoundError, RunInProgressError
from apiwarden.models.domain import utc_now
from apiwarden.scheduler.cron import next_fire_time
from apiwarden.types import TriggerSource

if TYPE_CHECKING:
    from datetime import datetime

    from apiwarden.models.domain import Task, TaskResult
    from apiwarden.runner.task_runner import TaskRunner

logger = structlog.get_logger(__name__)


@dataclass
class ScheduleEntry:
    task_id: str
    project_id: str
    cron: str
    timezone: str
    next_fire: datetime


class TaskScheduler:
    """Fires scheduled task runs.

    Each tick starts every entry whose next fire time has passed. A task
    that is still running from an earlier fire (or a manual run) is skipped
    for that tick, never queued.
    """

    def __init__(
        self,
        runner: TaskRunner,
        tasks: Any,
        configs: Any,
        tick_seconds: float = 1.0,
    ) -> None:
        self._runner = runner
        self._tasks = tasks
        self._configs = configs
        self._tick_seconds = tick_seconds
        self._entries: dict[str, ScheduleEntry] = {}
        self._running = False

    @property
    def entries(self) -> dict[str, ScheduleEntry]:
        return dict(self._entries)

    async def load(self, now: datetime | None = None) -> int:
        """Register every enabled task that has an enabled schedule."""
        self._entries.clear()
        for task in await self._tasks.list_scheduled():
            self._register(task, now or utc_now())
        logger.info("scheduler_loaded", entries=len(self._entries))
        return len(self._entries)

    async def reload_task(self, task_id: str, now: datetime | None = None) -> None:
        """Re-read one task after it was created or updated."""
        task = await self._tasks.get(task_id)
        self._entries.pop(task_id, None)
        if task and task.enabled and task.schedule.enabled and task.schedule.cron:
            self._register(task, now or utc_now())
        else:
            logger.debug("schedule_unregistered", task_id=task_id)

    def remove_task(self, task_id: str) -> None:
        if self._entries.pop(task_id, None):
            logger.info("schedule_removed", task_id=task_id)

    def _register(self, task: Task, now: datetime) -> None:
        try:
            fire = next_fire_time(task.schedule.cron, task.schedule.timezone, now)
        except ConfigError as exc:
            logger.warning("schedule_invalid", task_id=task.id, error=str(exc))
            return
        self._entries[task.id] = ScheduleEntry(
            task_id=task.id,
            project_id=task.project_id,
            cron=task.schedule.cron,
            timezone=task.schedule.timezone,
            next_fire=fire,
        )
        logger.info(
            "schedule_registered",
            task_id=task.id,
            cron=task.schedule.cron,
            timezone=task.schedule.timezone,
            next_fire=fire.isoformat(),
        )

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Fire every due entry. Returns the ids of tasks that actually started."""
        now = now or utc_now()
        started: list[str] = []
        for entry in list(self._entries.values()):
            if entry.next_fire > now:
                continue
            if await self._fire(entry):
                started.append(entry.task_id)
            entry.next_fire = next_fire_time(entry.cron, entry.timezone, now)
        return started

    async def _fire(self, entry: ScheduleEntry) -> bool:
        config = await self._configs.get(entry.project_id)
        if config is not None and not config.enabled:
            logger.info("scheduled_fire_skipped", task_id=entry.task_id, reason="project_disabled")
            return False
        try:
            result = await self._runner.start(entry.task_id, trigger=TriggerSource.SCHEDULE)
        except RunInProgressError:
            logger.info("scheduled_fire_skipped", task_id=entry.task_id, reason="already_running")
            return False
        except NotFoundError:
            logger.warning("scheduled_task_missing", task_id=entry.task_id)
            self._entries.pop(entry.task_id, None)
            return False
        except ConfigError as exc:
            logger.warning("scheduled_fire_rejected", task_id=entry.task_id, error=str(exc))
            return False
        logger.info("scheduled_fire", task_id=entry.task_id, result_id=result.id)
        return True

    async def run(self) -> None:
        """Tick until ``stop()`` is called."""
        self._running = True
        logger.info("scheduler_started", tick_seconds=self._tick_seconds, entries=len(self._entries))
        try:
            while self._running:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("scheduler_tick_error")
                await asyncio.sleep(self._tick_seconds)
        except asyncio.CancelledError:
            self._running = False
            logger.info("scheduler_cancelled")
            raise
        logger.info("scheduler_stopped")

    def stop(self) -> None:
        self._running = False

    async def run_now(
        self,
        task_id: str,
        environment_id: str | None = None,
        user: str | None = None,
        trigger: TriggerSource = TriggerSource.MANUAL,
    ) -> TaskResult:
        """Start a run immediately, outside the schedule."""
        return await self._runner.start(
            task_id, trigger=trigger, environment_id=environment_id, user=user
        )

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        return self._runner.cancel(task_id, reason)
