import asyncio

import httpx
import pytest

from apiwarden.exceptions import ConfigError, NotFoundError, RunInProgressError
from apiwarden.models.domain import (
    ExtractVariable,
    ParallelConfig,
    RequestConfig,
    RequestRule,
    ResponseConfig,
    ResponseRule,
    Task,
    TestCase,
)
from apiwarden.types import CaseStatus, RunStatus, TriggerSource
from apiwarden.web.dependencies import build_services


def _task(*interface_ids: str, **kwargs) -> Task:
    cases = [TestCase(interface_id=iid, order=i) for i, iid in enumerate(interface_ids)]
    return Task(name="smoke", project_id="p1", test_cases=cases, **kwargs)


class Gate:
    """Transport handler that blocks on a given call until released."""

    def __init__(self, block_on: int) -> None:
        self.block_on = block_on
        self.calls = 0
        self.reached = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.calls == self.block_on:
            self.reached.set()
            await self.release.wait()
        return httpx.Response(200, json={"code": 0})


@pytest.mark.unit
class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_all_cases_pass(self, services) -> None:
        task = await services.tasks.create(_task("if-list", "if-get", "if-create"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.PASSED
        assert result.summary.total == 3
        assert result.summary.passed == 3
        assert [o.status for o in result.results] == [CaseStatus.PASSED] * 3
        assert result.results[1].request.url == "http://api.staging.test/users/42"
        assert result.results[0].request.headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_summary_invariant_and_task_state(self, services_factory) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            status = 500 if request.url.path == "/users/42" else 200
            return httpx.Response(status, json={"code": 0})

        services = services_factory(handler)
        task = await services.tasks.create(_task("if-list", "if-get", "if-create"))
        result = await services.runner.run(task.id)
        summary = result.summary
        assert summary.total == summary.passed + summary.failed + summary.error + summary.skipped
        assert (summary.passed, summary.failed) == (2, 1)
        assert result.status == RunStatus.FAILED

        stored = await services.tasks.get(task.id)
        assert stored.latest_result.status == RunStatus.FAILED
        assert stored.latest_result.id == result.id
        assert stored.stats.total == 1
        assert stored.stats.failed == 1
        persisted = await services.results.get(result.id)
        assert persisted.status == RunStatus.FAILED
        assert persisted.completed_at is not None

    @pytest.mark.asyncio
    async def test_error_outranks_failed(self, services_factory) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(404)

        services = services_factory(handler)
        task = await services.tasks.create(_task("if-list", "if-create"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.ERROR
        assert result.results[0].status == CaseStatus.FAILED
        assert result.results[1].status == CaseStatus.ERROR
        assert result.results[1].error.code == "CONNECT_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_case_exception_does_not_abort_run(self, services, catalog) -> None:
        env = await catalog.get_environment("env1")
        env.headers["X-Team"] = "支付组"
        task = await services.tasks.create(_task("if-list", "if-get", "if-create"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.ERROR
        assert [o.status for o in result.results] == [CaseStatus.ERROR] * 3
        assert all(o.error.code == "EXECUTION_ERROR" for o in result.results)
        assert "UnicodeEncodeError" in result.results[0].error.message
        assert result.summary.error == 3

        persisted = await services.results.get(result.id)
        assert persisted.status == RunStatus.ERROR
        assert persisted.results[2].error.code == "EXECUTION_ERROR"

    @pytest.mark.asyncio
    async def test_handler_exception_isolated_to_its_case(self, services_factory) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                raise RuntimeError("transport exploded")
            return httpx.Response(200, json={"code": 0})

        services = services_factory(handler)
        task = await services.tasks.create(_task("if-create", "if-list"))
        result = await services.runner.run(task.id)
        assert result.results[0].status == CaseStatus.ERROR
        assert result.results[0].error.message == "RuntimeError: transport exploded"
        assert result.results[1].status == CaseStatus.PASSED
        assert result.status == RunStatus.ERROR

    @pytest.mark.asyncio
    async def test_crash_outside_a_case_finalizes_as_error(self, services, monkeypatch) -> None:
        async def broken_save(result_id, index, outcome) -> None:
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(services.results, "save_outcome", broken_save)
        task = await services.tasks.create(_task("if-list", "if-get", "if-create"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.ERROR
        assert result.cancel_reason is None
        assert result.error.code == "EXECUTION_ERROR"
        assert "store unavailable" in result.error.message
        assert result.results[0].status == CaseStatus.PASSED
        assert [o.status for o in result.results[1:]] == [CaseStatus.SKIPPED] * 2
        assert result.results[1].error.code == "EXECUTION_ERROR"

        stored = await services.tasks.get(task.id)
        assert stored.latest_result.status == RunStatus.ERROR
        assert await services.locker.is_locked(task.id) is False

    @pytest.mark.asyncio
    async def test_unreachable_host_retries_then_errors(self, services_factory) -> None:
        sent: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        services = services_factory(handler)
        await services.rules.create(
            RequestRule(
                project_id="p1",
                name="retry twice",
                request_config=RequestConfig(retry_count=2, retry_delay=0),
            )
        )
        task = await services.tasks.create(_task("if-list"))
        result = await services.runner.run(task.id)
        assert len(sent) == 3
        outcome = result.results[0]
        assert outcome.status == CaseStatus.ERROR
        assert outcome.attempts == 3
        assert outcome.retries == 2
        assert result.status == RunStatus.ERROR

    @pytest.mark.asyncio
    async def test_unresolved_path_is_case_error(self, services, catalog) -> None:
        env = await catalog.get_environment("env1")
        env.variables.pop("userId")
        task = await services.tasks.create(_task("if-get", "if-list"))
        result = await services.runner.run(task.id)
        assert result.results[0].status == CaseStatus.ERROR
        assert result.results[0].error.code == "CONFIG_ERROR"
        assert result.results[1].status == CaseStatus.PASSED

    @pytest.mark.asyncio
    async def test_serial_runs_chain_extracted_variables(self, services_factory) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"code": 0, "data": {"id": 7}})

        services = services_factory(handler)
        await services.rules.create(
            ResponseRule(
                project_id="p1",
                name="capture id",
                response_config=ResponseConfig(
                    extract_variables=[ExtractVariable(name="userId", path="data.id")]
                ),
            )
        )
        task = await services.tasks.create(_task("if-create", "if-get"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.PASSED
        assert seen == ["/users", "/users/7"]

    @pytest.mark.asyncio
    async def test_parallel_mode(self, services) -> None:
        task = await services.tasks.create(
            _task("if-list", "if-list", "if-list", "if-list", parallel=ParallelConfig(enabled=True, pool_size=2))
        )
        result = await services.runner.run(task.id, trigger=TriggerSource.SCHEDULE)
        assert result.status == RunStatus.PASSED
        assert result.summary.passed == 4
        assert result.triggered_by == TriggerSource.SCHEDULE

    @pytest.mark.asyncio
    async def test_parallel_outcomes_keep_definition_order(self, services_factory) -> None:
        completed: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                await asyncio.sleep(0.05)
            completed.append(f"{request.method} {request.url.path}")
            return httpx.Response(200, json={"code": 0})

        services = services_factory(handler)
        task = await services.tasks.create(
            _task("if-create", "if-list", "if-get", parallel=ParallelConfig(enabled=True, pool_size=3))
        )
        result = await services.runner.run(task.id)
        assert completed[-1] == "POST /users"
        assert [o.interface_id for o in result.results] == ["if-create", "if-list", "if-get"]
        assert [o.case_id for o in result.results] == [c.id for c in task.test_cases]
        assert result.summary.passed == 3


@pytest.mark.unit
class TestTriggerValidation:
    @pytest.mark.asyncio
    async def test_unknown_task(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.runner.start("missing")

    @pytest.mark.asyncio
    async def test_no_enabled_cases(self, services) -> None:
        task = _task("if-list")
        task.test_cases[0].enabled = False
        task = await services.tasks.create(task)
        with pytest.raises(ConfigError):
            await services.runner.start(task.id)
        assert await services.locker.is_locked(task.id) is False

    @pytest.mark.asyncio
    async def test_environment_from_other_project(self, services, catalog) -> None:
        from apiwarden.models.domain import Environment

        await catalog.add_environment(Environment(id="foreign", project_id="p2", name="prod"))
        task = await services.tasks.create(_task("if-list"))
        with pytest.raises(ConfigError, match="does not belong"):
            await services.runner.start(task.id, environment_id="foreign")


@pytest.mark.unit
class TestExclusivity:
    @pytest.mark.asyncio
    async def test_second_trigger_rejected_while_running(self, services_factory) -> None:
        gate = Gate(block_on=1)
        services = services_factory(gate)
        task = await services.tasks.create(_task("if-list"))

        first = await services.runner.start(task.id)
        assert first.status == RunStatus.RUNNING
        await gate.reached.wait()
        assert await services.runner.is_running(task.id)
        assert services.runner.active_result_id(task.id) == first.id
        with pytest.raises(RunInProgressError):
            await services.runner.start(task.id)

        gate.release.set()
        final = await services.runner.wait(task.id)
        assert final.id == first.id
        assert final.status == RunStatus.PASSED
        assert await services.runner.is_running(task.id) is False

        # Lock released: a new run may start
        again = await services.runner.run(task.id)
        assert again.id != first.id
        runs, total = await services.results.list_for_task(task.id)
        assert total == 2


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_run_skips_the_rest(self, services_factory) -> None:
        gate = Gate(block_on=4)
        services = services_factory(gate)
        task = await services.tasks.create(_task(*["if-list"] * 10))

        await services.runner.start(task.id)
        await gate.reached.wait()
        assert services.runner.cancel(task.id, reason="user") is True
        result = await services.runner.wait(task.id)

        assert result.status == RunStatus.CANCELLED
        assert result.cancel_reason == "user"
        assert result.summary.passed == 3
        assert result.summary.skipped == 7
        assert gate.calls == 4
        stored = await services.tasks.get(task.id)
        assert stored.latest_result.status == RunStatus.CANCELLED
        assert await services.locker.is_locked(task.id) is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, services) -> None:
        assert services.runner.cancel("nothing-running") is False

    @pytest.mark.asyncio
    async def test_task_deadline_cancels_run(self, settings, catalog) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        settings = settings.model_copy(update={"task_hard_deadline_seconds": 0.05})
        services = build_services(settings, transport=httpx.MockTransport(handler), catalog=catalog)
        task = await services.tasks.create(_task("if-list", "if-list"))
        result = await services.runner.run(task.id)
        assert result.status == RunStatus.CANCELLED
        assert result.cancel_reason == "deadline"
        assert result.summary.skipped == 2

    @pytest.mark.asyncio
    async def test_shutdown_finalizes_active_runs(self, services_factory) -> None:
        gate = Gate(block_on=1)
        services = services_factory(gate)
        task = await services.tasks.create(_task("if-list"))
        started = await services.runner.start(task.id)
        await gate.reached.wait()
        await services.runner.shutdown()
        stored = await services.results.get(started.id)
        assert stored.status == RunStatus.CANCELLED
        assert stored.cancel_reason == "shutdown"


@pytest.mark.unit
class TestRunSingle:
    @pytest.mark.asyncio
    async def test_runs_one_case_without_persisting(self, services) -> None:
        task = await services.tasks.create(_task("if-list", "if-get"))
        outcome = await services.runner.run_single(task.id, 1)
        assert outcome.status == CaseStatus.PASSED
        assert outcome.request.url.endswith("/users/42")
        _, total = await services.results.list_for_task(task.id)
        assert total == 0

    @pytest.mark.asyncio
    async def test_index_out_of_range(self, services) -> None:
        task = await services.tasks.create(_task("if-list"))
        with pytest.raises(ConfigError, match="out of range"):
            await services.runner.run_single(task.id, 5)
