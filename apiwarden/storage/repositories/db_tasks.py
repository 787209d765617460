"""Database-backed task repository using SQLModel + AsyncSession."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

from apiwarden.exceptions import NotFoundError
from apiwarden.models.database import AutoTestTaskRow, _utc_now
from apiwarden.models.domain import LatestResult, Task, TaskStats
from apiwarden.storage.repositories.tasks import RUN_STATE_FIELDS, apply_updates, check_task

logger = structlog.get_logger(__name__)


class RunState(BaseModel):
    latest_result: LatestResult | None = None
    stats: TaskStats = Field(default_factory=TaskStats)


class DatabaseTaskRepository:
    """PostgreSQL-backed task store.

    Same interface as the in-memory TaskRepository so the runner, the
    scheduler and the routes do not care which one they get.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_task(row: AutoTestTaskRow) -> Task:
        task = Task.model_validate_json(row.task_json)
        if row.run_state_json:
            state = RunState.model_validate_json(row.run_state_json)
            task.latest_result = state.latest_result
            task.stats = state.stats
        return task

    @staticmethod
    def _fill_row(row: AutoTestTaskRow, task: Task) -> None:
        row.project_id = task.project_id
        row.name = task.name
        row.enabled = task.enabled
        row.schedule_enabled = task.schedule.enabled and bool(task.schedule.cron)
        row.task_json = task.model_dump_json(exclude=set(RUN_STATE_FIELDS))
        row.updated_at = _utc_now()

    async def create(self, task: Task) -> Task:
        check_task(task)
        row = AutoTestTaskRow(
            id=task.id,
            project_id=task.project_id,
            name=task.name,
            task_json="",
            run_state_json=RunState(
                latest_result=task.latest_result, stats=task.stats
            ).model_dump_json(),
        )
        self._fill_row(row, task)
        async with AsyncSession(self._engine) as session:
            session.add(row)
            await session.commit()
        logger.info("task_created", task_id=task.id, name=task.name, project_id=task.project_id)
        return task

    async def get(self, task_id: str) -> Task | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestTaskRow, task_id)
            return self._to_task(row) if row else None

    async def list_all(self, project_id: str | None = None) -> list[Task]:
        async with AsyncSession(self._engine) as session:
            stmt = select(AutoTestTaskRow).order_by(col(AutoTestTaskRow.created_at))
            if project_id is not None:
                stmt = stmt.where(col(AutoTestTaskRow.project_id) == project_id)
            result = await session.execute(stmt)
            return [self._to_task(r) for r in result.scalars().all()]

    async def list_scheduled(self) -> list[Task]:
        async with AsyncSession(self._engine) as session:
            stmt = select(AutoTestTaskRow).where(
                col(AutoTestTaskRow.enabled).is_(True),
                col(AutoTestTaskRow.schedule_enabled).is_(True),
            )
            result = await session.execute(stmt)
            return [self._to_task(r) for r in result.scalars().all()]

    async def update(self, task_id: str, **updates: Any) -> Task | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestTaskRow, task_id, with_for_update=True)
            if not row:
                return None
            task = apply_updates(self._to_task(row), updates)
            self._fill_row(row, task)
            session.add(row)
            await session.commit()
            logger.info("task_updated", task_id=task_id, fields=sorted(updates))
            return task

    async def delete(self, task_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestTaskRow, task_id)
            if not row:
                return False
            await session.delete(row)
            await session.commit()
            logger.info("task_deleted", task_id=task_id)
            return True

    async def record_run_state(
        self, task_id: str, latest: LatestResult | None, stats: TaskStats
    ) -> None:
        """Write run state to its own column; CRUD updates never touch it."""
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestTaskRow, task_id, with_for_update=True)
            if not row:
                raise NotFoundError(f"Task {task_id} not found")
            state = (
                RunState.model_validate_json(row.run_state_json)
                if row.run_state_json
                else RunState()
            )
            if latest is not None:
                state.latest_result = latest
            state.stats = stats
            row.run_state_json = state.model_dump_json()
            session.add(row)
            await session.commit()
