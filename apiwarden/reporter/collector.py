"""Case outcome collection and run summary."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from apiwarden.exceptions import CancellationError
from apiwarden.models.domain import CaseError, CaseOutcome, RunSummary, utc_now
from apiwarden.types import CaseStatus, RunStatus

if TYPE_CHECKING:
    from apiwarden.models.domain import TaskResult

logger = structlog.get_logger(__name__)

FINISHED_CASE_STATUSES = frozenset({CaseStatus.PASSED, CaseStatus.FAILED, CaseStatus.ERROR})


def summarize(outcomes: list[CaseOutcome]) -> RunSummary:
    """Count outcomes. Anything not finished counts as skipped."""
    summary = RunSummary(total=len(outcomes))
    for outcome in outcomes:
        if outcome.status == CaseStatus.PASSED:
            summary.passed += 1
        elif outcome.status == CaseStatus.FAILED:
            summary.failed += 1
        elif outcome.status == CaseStatus.ERROR:
            summary.error += 1
        else:
            summary.skipped += 1
    return summary


def derive_status(summary: RunSummary, cancelled: bool) -> RunStatus:
    if cancelled or (summary.total and summary.skipped == summary.total):
        return RunStatus.CANCELLED
    if summary.error:
        return RunStatus.ERROR
    if summary.failed:
        return RunStatus.FAILED
    return RunStatus.PASSED


class ResultCollector:
    """Holds the outcome slots of one run, indexed by case position."""

    def __init__(self, outcomes: list[CaseOutcome]) -> None:
        self._outcomes = [o.model_copy(deep=True) for o in outcomes]

    @property
    def outcomes(self) -> list[CaseOutcome]:
        return list(self._outcomes)

    def record(self, index: int, outcome: CaseOutcome) -> None:
        self._outcomes[index] = outcome
        logger.debug(
            "case_outcome_collected",
            case_index=index,
            case_id=outcome.case_id,
            status=outcome.status.value,
            duration_ms=outcome.duration,
        )

    def finished(self) -> list[CaseOutcome]:
        """Outcomes so far, in case order (the records later cases may reference)."""
        return [o for o in self._outcomes if o.status in FINISHED_CASE_STATUSES]

    def skip_unfinished(self, reason: str | None = None) -> int:
        """Mark every case that did not finish as skipped. Returns how many.

        With a cancel ``reason`` each skipped outcome records why it never ran.
        """
        skipped = 0
        for outcome in self._outcomes:
            if outcome.status not in FINISHED_CASE_STATUSES:
                outcome.status = CaseStatus.SKIPPED
                outcome.completed_at = outcome.completed_at or utc_now()
                if reason is not None:
                    outcome.error = CaseError(message=str(CancellationError(reason)), code="CANCELLED")
                skipped += 1
        return skipped

    def build(
        self,
        result: TaskResult,
        cancelled: bool,
        reason: str | None = None,
        failure: BaseException | None = None,
    ) -> TaskResult:
        """Fill in the final fields of ``result`` from the collected outcomes.

        A ``failure`` that stopped the run outside any case makes the run an
        ``error`` (unless it was cancelled) and is kept as the run's error.
        """
        self.skip_unfinished((reason or "cancelled") if cancelled else None)
        completed_at = utc_now()
        summary = summarize(self._outcomes)
        status = derive_status(summary, cancelled)
        error = None
        if failure is not None:
            error = CaseError(message=f"{type(failure).__name__}: {failure}", code="EXECUTION_ERROR")
            if not cancelled:
                status = RunStatus.ERROR
                for outcome in self._outcomes:
                    if outcome.status == CaseStatus.SKIPPED and outcome.error is None:
                        outcome.error = error
        final = result.model_copy(
            update={
                "results": [o.model_copy(deep=True) for o in self._outcomes],
                "summary": summary,
                "status": status,
                "error": error,
                "completed_at": completed_at,
                "duration": int((completed_at - result.started_at).total_seconds() * 1000),
                "cancel_reason": reason if cancelled else None,
            }
        )
        logger.info(
            "run_summarized",
            result_id=result.id,
            task_id=result.task_id,
            status=final.status.value,
            total=summary.total,
            passed=summary.passed,
            failed=summary.failed,
            error=summary.error,
            skipped=summary.skipped,
        )
        return final
