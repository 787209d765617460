"""In-memory task result (run record) repository."""

from __future__ import annotations

from collections import Counter

import structlog

from apiwarden.exceptions import NotFoundError, StorageError
from apiwarden.models.domain import CaseOutcome, TaskResult

logger = structlog.get_logger(__name__)


class TaskResultRepository:
    """In-memory run store. Replaced by DatabaseTaskResultRepository in production."""

    def __init__(self) -> None:
        self._results: dict[str, TaskResult] = {}

    def _get_open(self, result_id: str) -> TaskResult:
        result = self._results.get(result_id)
        if not result:
            raise NotFoundError(f"Result {result_id} not found")
        if result.is_final:
            raise StorageError(f"Result {result_id} is already finalized")
        return result

    async def create(self, result: TaskResult) -> TaskResult:
        self._results[result.id] = result.model_copy(deep=True)
        logger.info("task_result_created", result_id=result.id, task_id=result.task_id)
        return result

    async def get(self, result_id: str) -> TaskResult | None:
        result = self._results.get(result_id)
        return result.model_copy(deep=True) if result else None

    async def save_outcome(self, result_id: str, index: int, outcome: CaseOutcome) -> None:
        """Store the outcome of case ``index`` while the run is in flight."""
        result = self._get_open(result_id)
        result.results[index] = outcome.model_copy(deep=True)

    async def finalize(self, result: TaskResult) -> TaskResult:
        """Persist the final state of a run. A run can only be finalized once."""
        self._get_open(result.id)
        if not result.is_final:
            raise StorageError(f"Result {result.id} finalized with status running")
        self._results[result.id] = result.model_copy(deep=True)
        logger.info("task_result_finalized", result_id=result.id, status=result.status.value)
        return result

    async def list_for_task(
        self, task_id: str, page: int = 1, page_size: int = 10
    ) -> tuple[list[TaskResult], int]:
        """Return one page of runs for a task, newest first, plus the total count."""
        runs = sorted(
            (r for r in self._results.values() if r.task_id == task_id),
            key=lambda r: r.started_at,
            reverse=True,
        )
        start = (max(page, 1) - 1) * page_size
        return [r.model_copy(deep=True) for r in runs[start : start + page_size]], len(runs)

    async def latest_for_task(self, task_id: str) -> TaskResult | None:
        runs, _ = await self.list_for_task(task_id, page=1, page_size=1)
        return runs[0] if runs else None

    async def count_by_status(self, task_id: str) -> dict[str, int]:
        return dict(Counter(r.status.value for r in self._results.values() if r.task_id == task_id))
