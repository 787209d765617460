"""Task run orchestration: locking, per-case execution, cancellation and finalization."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from apiwarden.config.settings import get_settings
from apiwarden.exceptions import (
    AssertionFailure,
    ConfigError,
    NetworkError,
    NotFoundError,
    RunInProgressError,
)
from apiwarden.models.domain import (
    CaseError,
    CaseOutcome,
    RunSummary,
    TaskResult,
    TaskStats,
    utc_now,
)
from apiwarden.reporter.collector import ResultCollector
from apiwarden.runner.assertions import AssertionEngine
from apiwarden.runner.executor import RequestExecutor
from apiwarden.runner.request_builder import RequestBuilder
from apiwarden.types import CaseStatus, TriggerSource
from apiwarden.utils.timing import elapsed_ms

if TYPE_CHECKING:
    from apiwarden.config.settings import Settings
    from apiwarden.models.domain import (
        AutoTestConfig,
        Environment,
        LatestResult,
        RuleSet,
        Task,
        TestCase,
    )
    from apiwarden.runner.locks import Locker
    from apiwarden.storage.repositories.catalog import CatalogRepository

logger = structlog.get_logger(__name__)


@dataclass
class ActiveRun:
    """Bookkeeping for a run in flight in this process."""

    task_id: str
    result_id: str
    cancelled: bool = False
    reason: str | None = None
    in_flight: set[asyncio.Task[Any]] = field(default_factory=set)
    handle: asyncio.Task[TaskResult] | None = None

    def cancel(self, reason: str) -> None:
        if not self.cancelled:
            self.cancelled = True
            self.reason = reason
        for job in list(self.in_flight):
            job.cancel()


@dataclass
class RunContext:
    """Everything a case needs that is fixed for the whole run."""

    task: Task
    environment: Environment | None
    rules: RuleSet
    project_config: AutoTestConfig | None


class TaskRunner:
    """Runs tasks under a per-task lock and records their results.

    Only this class writes a task's ``latest_result`` and ``stats``.
    """

    def __init__(
        self,
        tasks: Any,
        results: Any,
        rules: Any,
        configs: Any,
        catalog: CatalogRepository,
        locker: Locker,
        *,
        builder: RequestBuilder | None = None,
        executor: RequestExecutor | None = None,
        engine: AssertionEngine | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._tasks = tasks
        self._results = results
        self._rules = rules
        self._configs = configs
        self._catalog = catalog
        self._locker = locker
        self._builder = builder or RequestBuilder(settings.default_base_url)
        self._executor = executor or RequestExecutor(
            hard_deadline_seconds=settings.case_hard_deadline_seconds
        )
        self._engine = engine or AssertionEngine()
        self._task_deadline = settings.task_hard_deadline_seconds
        self._default_pool_size = settings.default_pool_size
        self._active: dict[str, ActiveRun] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        task_id: str,
        trigger: TriggerSource = TriggerSource.MANUAL,
        environment_id: str | None = None,
        user: str | None = None,
    ) -> TaskResult:
        """Begin a run in the background and return its ``running`` record.

        Raises NotFoundError, ConfigError, or RunInProgressError if a run of
        the task is already active.
        """
        result, _ = await self._start(task_id, trigger, environment_id, user)
        return result

    async def run(
        self,
        task_id: str,
        trigger: TriggerSource = TriggerSource.MANUAL,
        environment_id: str | None = None,
        user: str | None = None,
    ) -> TaskResult:
        """Like ``start`` but wait for the run to finish and return the final record."""
        _, handle = await self._start(task_id, trigger, environment_id, user)
        return await handle

    async def wait(self, task_id: str) -> TaskResult | None:
        """Wait for the active run of ``task_id``, if any, to finish."""
        active = self._active.get(task_id)
        if not active or not active.handle:
            return None
        return await asyncio.shield(active.handle)

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        """Signal the active run of ``task_id`` to stop. Returns False if none is active here."""
        active = self._active.get(task_id)
        if not active:
            return False
        logger.info("run_cancel_requested", task_id=task_id, result_id=active.result_id, reason=reason)
        active.cancel(reason)
        return True

    async def is_running(self, task_id: str) -> bool:
        return task_id in self._active or await self._locker.is_locked(task_id)

    def active_result_id(self, task_id: str) -> str | None:
        active = self._active.get(task_id)
        return active.result_id if active else None

    async def run_single(
        self, task_id: str, case_index: int, environment_id: str | None = None
    ) -> CaseOutcome:
        """Execute one case outside any run. Nothing is persisted and no lock is taken."""
        task = await self._get_task(task_id)
        if not 0 <= case_index < len(task.test_cases):
            raise ConfigError(
                f"Test case index {case_index} out of range (task has {len(task.test_cases)})"
            )
        environment = await self._resolve_environment(task, environment_id)
        ctx = await self._context(task, environment)
        case = task.test_cases[case_index]
        return await self._run_case(ctx, case, case_index, {}, [])

    async def shutdown(self) -> None:
        """Cancel every active run and wait for each to finalize."""
        handles = []
        for active in list(self._active.values()):
            active.cancel("shutdown")
            if active.handle:
                handles.append(active.handle)
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _start(
        self,
        task_id: str,
        trigger: TriggerSource,
        environment_id: str | None,
        user: str | None,
    ) -> tuple[TaskResult, asyncio.Task[TaskResult]]:
        task = await self._get_task(task_id)
        if not task.enabled:
            raise ConfigError(f"Task {task_id} is disabled")
        cases = task.enabled_cases()
        if not cases:
            raise ConfigError(f"Task {task_id} has no enabled test cases")
        environment = await self._resolve_environment(task, environment_id)

        if not await self._locker.try_acquire(task_id):
            logger.info("run_rejected_in_progress", task_id=task_id, trigger=trigger.value)
            raise RunInProgressError(task_id)

        try:
            result = TaskResult(
                task_id=task_id,
                environment_id=environment.id if environment else None,
                triggered_by=trigger,
                triggered_by_user=user,
                summary=RunSummary(total=len(cases)),
                results=await self._pending_outcomes(cases),
            )
            await self._results.create(result)
            await self._record_run_state(task_id, result.to_latest())
        except BaseException:
            await self._locker.release(task_id)
            raise

        active = ActiveRun(task_id=task_id, result_id=result.id)
        self._active[task_id] = active
        active.handle = asyncio.create_task(
            self._execute(task, environment, cases, result, active),
            name=f"run-{task_id}",
        )
        logger.info(
            "run_started",
            task_id=task_id,
            result_id=result.id,
            trigger=trigger.value,
            cases=len(cases),
            parallel=task.parallel.enabled,
        )
        return result, active.handle

    async def _execute(
        self,
        task: Task,
        environment: Environment | None,
        cases: list[TestCase],
        result: TaskResult,
        active: ActiveRun,
    ) -> TaskResult:
        log = logger.bind(task_id=task.id, result_id=result.id)
        collector = ResultCollector(result.results)
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self._task_deadline, self._on_deadline, active)
        failure: Exception | None = None
        try:
            ctx = await self._context(task, environment)
            if task.parallel.enabled:
                await self._run_parallel(ctx, cases, result.id, collector, active)
            else:
                await self._run_serial(ctx, cases, result.id, collector, active)
        except asyncio.CancelledError:
            active.cancel("shutdown")
            raise
        except Exception as exc:
            log.exception("run_crashed")
            failure = exc
        finally:
            deadline.cancel()
            final = collector.build(
                result, cancelled=active.cancelled, reason=active.reason, failure=failure
            )
            await self._finalize(final, log)
        return final

    async def _finalize(self, final: TaskResult, log: Any) -> None:
        """Persist the final record and task run state, then release the lock."""
        try:
            await self._results.finalize(final)
            await self._record_run_state(final.task_id, final.to_latest())
        except Exception:
            log.exception("run_finalize_failed")
        finally:
            self._active.pop(final.task_id, None)
            await self._locker.release(final.task_id)
        log.info(
            "run_finished",
            status=final.status.value,
            duration_ms=final.duration,
            passed=final.summary.passed,
            failed=final.summary.failed,
            error=final.summary.error,
            skipped=final.summary.skipped,
        )

    def _on_deadline(self, active: ActiveRun) -> None:
        logger.warning("run_deadline_exceeded", task_id=active.task_id, result_id=active.result_id)
        active.cancel("deadline")

    async def _run_serial(
        self,
        ctx: RunContext,
        cases: list[TestCase],
        result_id: str,
        collector: ResultCollector,
        active: ActiveRun,
    ) -> None:
        variables: dict[str, Any] = {}
        for index, case in enumerate(cases):
            if active.cancelled:
                break
            outcome = await self._run_tracked(
                active, self._run_case(ctx, case, index, dict(variables), collector.finished())
            )
            if outcome is None:
                break
            collector.record(index, outcome)
            await self._results.save_outcome(result_id, index, outcome)
            variables.update(outcome.extracted)

    async def _run_parallel(
        self,
        ctx: RunContext,
        cases: list[TestCase],
        result_id: str,
        collector: ResultCollector,
        active: ActiveRun,
    ) -> None:
        pool_size = ctx.task.parallel.pool_size or self._default_pool_size
        semaphore = asyncio.Semaphore(pool_size)

        async def worker(index: int, case: TestCase) -> None:
            async with semaphore:
                if active.cancelled:
                    return
                outcome = await self._run_tracked(active, self._run_case(ctx, case, index, {}, []))
                if outcome is None:
                    return
                collector.record(index, outcome)
                await self._results.save_outcome(result_id, index, outcome)

        finished = await asyncio.gather(
            *(worker(i, c) for i, c in enumerate(cases)), return_exceptions=True
        )
        for item in finished:
            if isinstance(item, BaseException):
                raise item

    async def _run_tracked(self, active: ActiveRun, coro: Any) -> CaseOutcome | None:
        """Run one case as a cancellable job. Returns None if the run cancelled it."""
        job: asyncio.Task[CaseOutcome] = asyncio.ensure_future(coro)
        active.in_flight.add(job)
        try:
            return await job
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if active.cancelled and not (current and current.cancelling()):
                return None
            raise
        finally:
            active.in_flight.discard(job)

    # ------------------------------------------------------------------
    # Single case
    # ------------------------------------------------------------------

    async def _run_case(
        self,
        ctx: RunContext,
        case: TestCase,
        index: int,
        variables: dict[str, Any],
        records: list[CaseOutcome],
    ) -> CaseOutcome:
        log = logger.bind(task_id=ctx.task.id, case_index=index, case_id=case.id)
        outcome = CaseOutcome(
            case_id=case.id,
            interface_id=case.interface_id,
            order=case.order,
            status=CaseStatus.RUNNING,
            started_at=utc_now(),
        )
        start = time.monotonic()
        request_config = ctx.rules.request_config(ctx.project_config)
        response_config = ctx.rules.response_config
        try:
            interface = await self._catalog.get_interface(case.interface_id)
            if interface is None:
                raise ConfigError(f"Interface {case.interface_id} not found")
            outcome.interface_name = interface.display_name
            request = self._builder.build(
                interface,
                case,
                environment=ctx.environment,
                task_base_url=ctx.task.base_url,
                common_headers=ctx.task.common_headers,
                default_headers=request_config.default_headers,
                project_id=ctx.task.project_id,
                variables=variables,
                records=records,
            )
            outcome.request = request.snapshot()
            exchange = await self._executor.execute(request, request_config)
            outcome.request = exchange.request.snapshot()
            outcome.response = exchange.snapshot()
            outcome.attempts = exchange.attempts
            outcome.extracted = self._engine.extract(exchange, response_config)
            outcome.assertion_result = self._engine.verify(
                exchange,
                ctx.rules.assertion_config,
                case,
                response_config,
                interface.res_body_schema,
            )
        except (ConfigError, NetworkError) as exc:
            outcome.status = CaseStatus.ERROR
            outcome.error = CaseError(message=str(exc), code=exc.code)
            outcome.assertion_result = self._engine.error(exc)
            outcome.attempts = getattr(exc, "attempts", 0)
            log.warning("case_error", code=exc.code, error=str(exc), attempts=outcome.attempts)
        except AssertionFailure as exc:
            outcome.status = CaseStatus.FAILED
            outcome.assertion_result = exc.result
            log.info("case_failed", checks=exc.result.message, http_status=exchange.status_code)
        except Exception as exc:
            outcome.status = CaseStatus.ERROR
            outcome.error = CaseError(
                message=f"{type(exc).__name__}: {exc}", code="EXECUTION_ERROR"
            )
            outcome.assertion_result = self._engine.error(exc)
            log.exception("case_crashed", error=str(exc))
        else:
            outcome.status = CaseStatus.PASSED
            log.info(
                "case_passed",
                http_status=exchange.status_code,
                attempts=exchange.attempts,
                duration_ms=exchange.duration_ms,
            )
        outcome.duration = elapsed_ms(start)
        outcome.completed_at = utc_now()
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_task(self, task_id: str) -> Task:
        task = await self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def _resolve_environment(
        self, task: Task, environment_id: str | None
    ) -> Environment | None:
        """Explicit environment, then the task's own, then the project default."""
        env_id = environment_id or task.environment_id
        if env_id:
            environment = await self._catalog.get_environment(env_id)
            if environment is None:
                raise ConfigError(f"Environment {env_id} not found")
            if environment.project_id != task.project_id:
                raise ConfigError(
                    f"Environment {env_id} does not belong to project {task.project_id}"
                )
            return environment
        return await self._catalog.get_default_environment(task.project_id)

    async def _context(self, task: Task, environment: Environment | None) -> RunContext:
        return RunContext(
            task=task,
            environment=environment,
            rules=await self._rules.rule_set(task.project_id),
            project_config=await self._configs.get(task.project_id),
        )

    async def _pending_outcomes(self, cases: list[TestCase]) -> list[CaseOutcome]:
        outcomes = []
        for case in cases:
            interface = await self._catalog.get_interface(case.interface_id)
            outcomes.append(
                CaseOutcome(
                    case_id=case.id,
                    interface_id=case.interface_id,
                    interface_name=interface.display_name if interface else "",
                    order=case.order,
                )
            )
        return outcomes

    async def _record_run_state(self, task_id: str, latest: LatestResult | None) -> None:
        stats = TaskStats.from_counts(await self._results.count_by_status(task_id))
        await self._tasks.record_run_state(task_id, latest, stats)
