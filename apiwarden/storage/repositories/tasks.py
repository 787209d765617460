"""In-memory task repository (PostgreSQL-backed version in db_tasks)."""

from __future__ import annotations

from typing import Any

import structlog

from apiwarden.exceptions import NotFoundError
from apiwarden.models.domain import LatestResult, Task, TaskStats, utc_now
from apiwarden.scheduler.cron import resolve_timezone, validate_cron

logger = structlog.get_logger(__name__)

# Fields owned by the task runner; CRUD updates never touch them
RUN_STATE_FIELDS = frozenset({"latest_result", "stats"})


def check_task(task: Task) -> Task:
    """Validate a task before it is saved.

    A malformed schedule is rejected here so the scheduler never sees one.
    """
    if task.schedule.enabled or task.schedule.cron:
        task.schedule.cron = validate_cron(task.schedule.cron)
    resolve_timezone(task.schedule.timezone)
    return task


def apply_updates(task: Task, updates: dict[str, Any]) -> Task:
    """Return a validated copy of ``task`` with CRUD ``updates`` applied."""
    data = task.model_dump()
    data.update({k: v for k, v in updates.items() if k not in RUN_STATE_FIELDS | {"id"}})
    data["updated_at"] = utc_now()
    return check_task(Task.model_validate(data))


class TaskRepository:
    """In-memory task store. Replaced by DatabaseTaskRepository in production."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def create(self, task: Task) -> Task:
        check_task(task)
        self._tasks[task.id] = task.model_copy(deep=True)
        logger.info("task_created", task_id=task.id, name=task.name, project_id=task.project_id)
        return task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_all(self, project_id: str | None = None) -> list[Task]:
        tasks = [t for t in self._tasks.values() if project_id is None or t.project_id == project_id]
        return [t.model_copy(deep=True) for t in sorted(tasks, key=lambda t: t.created_at)]

    async def list_scheduled(self) -> list[Task]:
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if t.enabled and t.schedule.enabled and t.schedule.cron
        ]

    async def update(self, task_id: str, **updates: Any) -> Task | None:
        task = self._tasks.get(task_id)
        if not task:
            return None
        updated = apply_updates(task, updates)
        self._tasks[task_id] = updated
        logger.info("task_updated", task_id=task_id, fields=sorted(updates))
        return updated.model_copy(deep=True)

    async def delete(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        logger.info("task_deleted", task_id=task_id)
        return True

    async def record_run_state(
        self, task_id: str, latest: LatestResult | None, stats: TaskStats
    ) -> None:
        """Write ``latest_result`` and ``stats`` together."""
        task = self._tasks.get(task_id)
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        if latest is not None:
            task.latest_result = latest.model_copy(deep=True)
        task.stats = stats.model_copy()
