"""Database-backed task result repository."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

from apiwarden.exceptions import NotFoundError, StorageError
from apiwarden.models.database import AutoTestResultRow, to_naive_utc
from apiwarden.models.domain import CaseOutcome, TaskResult
from apiwarden.types import RunStatus

logger = structlog.get_logger(__name__)


class DatabaseTaskResultRepository:
    """PostgreSQL-backed run store with the TaskResultRepository interface."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_result(row: AutoTestResultRow) -> TaskResult:
        return TaskResult.model_validate_json(row.result_json)

    async def _get_open_row(self, session: AsyncSession, result_id: str) -> AutoTestResultRow:
        row = await session.get(AutoTestResultRow, result_id, with_for_update=True)
        if not row:
            raise NotFoundError(f"Result {result_id} not found")
        if row.status != RunStatus.RUNNING:
            raise StorageError(f"Result {result_id} is already finalized")
        return row

    async def create(self, result: TaskResult) -> TaskResult:
        row = AutoTestResultRow(
            id=result.id,
            task_id=result.task_id,
            status=result.status.value,
            started_at=to_naive_utc(result.started_at),
            result_json=result.model_dump_json(),
        )
        async with AsyncSession(self._engine) as session:
            session.add(row)
            await session.commit()
        logger.info("task_result_created", result_id=result.id, task_id=result.task_id)
        return result

    async def get(self, result_id: str) -> TaskResult | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestResultRow, result_id)
            return self._to_result(row) if row else None

    async def save_outcome(self, result_id: str, index: int, outcome: CaseOutcome) -> None:
        async with AsyncSession(self._engine) as session:
            row = await self._get_open_row(session, result_id)
            result = self._to_result(row)
            result.results[index] = outcome
            row.result_json = result.model_dump_json()
            session.add(row)
            await session.commit()

    async def finalize(self, result: TaskResult) -> TaskResult:
        if not result.is_final:
            raise StorageError(f"Result {result.id} finalized with status running")
        async with AsyncSession(self._engine) as session:
            row = await self._get_open_row(session, result.id)
            row.status = result.status.value
            row.completed_at = to_naive_utc(result.completed_at) if result.completed_at else None
            row.result_json = result.model_dump_json()
            session.add(row)
            await session.commit()
        logger.info("task_result_finalized", result_id=result.id, status=result.status.value)
        return result

    async def list_for_task(
        self, task_id: str, page: int = 1, page_size: int = 10
    ) -> tuple[list[TaskResult], int]:
        async with AsyncSession(self._engine) as session:
            total_stmt = (
                select(func.count())
                .select_from(AutoTestResultRow)
                .where(col(AutoTestResultRow.task_id) == task_id)
            )
            total = (await session.execute(total_stmt)).scalar_one()
            stmt = (
                select(AutoTestResultRow)
                .where(col(AutoTestResultRow.task_id) == task_id)
                .order_by(col(AutoTestResultRow.started_at).desc())
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_result(r) for r in rows], total

    async def latest_for_task(self, task_id: str) -> TaskResult | None:
        runs, _ = await self.list_for_task(task_id, page=1, page_size=1)
        return runs[0] if runs else None

    async def count_by_status(self, task_id: str) -> dict[str, int]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(AutoTestResultRow.status, func.count())
                .where(col(AutoTestResultRow.task_id) == task_id)
                .group_by(AutoTestResultRow.status)
            )
            rows = (await session.execute(stmt)).all()
            return {status: count for status, count in rows}
