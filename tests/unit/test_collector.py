import pytest

from apiwarden.models.domain import CaseOutcome, RunSummary, TaskResult
from apiwarden.reporter.collector import ResultCollector, derive_status, summarize
from apiwarden.types import CaseStatus, RunStatus


def _outcomes(*statuses: CaseStatus) -> list[CaseOutcome]:
    return [CaseOutcome(case_id=f"c{i}", interface_id="i", status=s) for i, s in enumerate(statuses)]


@pytest.mark.unit
class TestSummary:
    def test_counts_add_up(self) -> None:
        summary = summarize(
            _outcomes(CaseStatus.PASSED, CaseStatus.FAILED, CaseStatus.ERROR, CaseStatus.PENDING)
        )
        assert summary == RunSummary(total=4, passed=1, failed=1, error=1, skipped=1)
        assert summary.total == summary.passed + summary.failed + summary.error + summary.skipped

    @pytest.mark.parametrize(
        ("summary", "cancelled", "expected"),
        [
            (RunSummary(total=2, passed=2), False, RunStatus.PASSED),
            (RunSummary(total=2, passed=1, failed=1), False, RunStatus.FAILED),
            (RunSummary(total=3, passed=1, failed=1, error=1), False, RunStatus.ERROR),
            (RunSummary(total=2, passed=2), True, RunStatus.CANCELLED),
            (RunSummary(total=2, skipped=2), False, RunStatus.CANCELLED),
        ],
    )
    def test_derive_status(self, summary: RunSummary, cancelled: bool, expected: RunStatus) -> None:
        assert derive_status(summary, cancelled) == expected


@pytest.mark.unit
class TestResultCollector:
    def test_build_skips_unfinished(self) -> None:
        result = TaskResult(task_id="t1", results=_outcomes(*[CaseStatus.PENDING] * 3))
        collector = ResultCollector(result.results)
        collector.record(0, _outcomes(CaseStatus.PASSED)[0])
        final = collector.build(result, cancelled=True, reason="user")
        assert final.status == RunStatus.CANCELLED
        assert final.cancel_reason == "user"
        assert final.summary.passed == 1
        assert final.summary.skipped == 2
        assert [o.status for o in final.results[1:]] == [CaseStatus.SKIPPED, CaseStatus.SKIPPED]
        assert final.results[1].error.message == "Run cancelled: user"
        assert final.results[1].error.code == "CANCELLED"
        assert final.results[0].error is None
        assert final.completed_at is not None
        assert final.duration >= 0

    def test_finished_returns_completed_records_in_order(self) -> None:
        collector = ResultCollector(_outcomes(CaseStatus.PENDING, CaseStatus.PENDING))
        done = _outcomes(CaseStatus.FAILED)[0]
        collector.record(1, done)
        assert collector.finished() == [done]

    def test_skips_without_cancel_carry_no_error(self) -> None:
        result = TaskResult(task_id="t1", results=_outcomes(CaseStatus.PENDING))
        final = ResultCollector(result.results).build(result, cancelled=False)
        assert final.results[0].status == CaseStatus.SKIPPED
        assert final.results[0].error is None
        assert final.status == RunStatus.CANCELLED

    def test_failure_outside_cases_is_an_error_run(self) -> None:
        result = TaskResult(task_id="t1", results=_outcomes(*[CaseStatus.PENDING] * 3))
        collector = ResultCollector(result.results)
        final = collector.build(result, cancelled=False, failure=RuntimeError("store down"))
        assert final.status == RunStatus.ERROR
        assert final.error.code == "EXECUTION_ERROR"
        assert final.error.message == "RuntimeError: store down"
        assert final.summary.skipped == 3
        assert all(o.error.code == "EXECUTION_ERROR" for o in final.results)

    def test_failure_after_all_cases_finished(self) -> None:
        result = TaskResult(task_id="t1", results=_outcomes(CaseStatus.PENDING))
        collector = ResultCollector(result.results)
        collector.record(0, _outcomes(CaseStatus.PASSED)[0])
        final = collector.build(result, cancelled=False, failure=RuntimeError("boom"))
        assert final.summary.passed == 1
        assert final.status == RunStatus.ERROR

    def test_cancel_wins_over_failure(self) -> None:
        result = TaskResult(task_id="t1", results=_outcomes(CaseStatus.PENDING))
        final = ResultCollector(result.results).build(
            result, cancelled=True, reason="user", failure=RuntimeError("boom")
        )
        assert final.status == RunStatus.CANCELLED
        assert final.results[0].error.code == "CANCELLED"
        assert final.error.code == "EXECUTION_ERROR"
