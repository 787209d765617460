"""Service wiring shared by the API and the scheduler worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import Request

from apiwarden.config.settings import get_settings
from apiwarden.reporter.hierarchy import HierarchyReporter
from apiwarden.runner.executor import RequestExecutor
from apiwarden.runner.locks import Locker, create_locker
from apiwarden.runner.task_runner import TaskRunner
from apiwarden.scheduler.scheduler import TaskScheduler
from apiwarden.storage.repositories.catalog import CatalogRepository
from apiwarden.storage.repositories.results import TaskResultRepository
from apiwarden.storage.repositories.rules import AutoTestConfigRepository, RuleRepository
from apiwarden.storage.repositories.tasks import TaskRepository

if TYPE_CHECKING:
    import httpx

    from apiwarden.config.settings import Settings

logger = structlog.get_logger(__name__)


def _create_task_repo(settings: Settings) -> TaskRepository | Any:
    """Create the appropriate task repository based on settings."""
    if settings.use_database:
        from apiwarden.storage.database import get_engine
        from apiwarden.storage.repositories.db_tasks import DatabaseTaskRepository

        return DatabaseTaskRepository(get_engine())
    return TaskRepository()


def _create_result_repo(settings: Settings) -> TaskResultRepository | Any:
    if settings.use_database:
        from apiwarden.storage.database import get_engine
        from apiwarden.storage.repositories.db_results import DatabaseTaskResultRepository

        return DatabaseTaskResultRepository(get_engine())
    return TaskResultRepository()


def _create_rule_repos(settings: Settings) -> tuple[Any, Any]:
    if settings.use_database:
        from apiwarden.storage.database import get_engine
        from apiwarden.storage.repositories.db_rules import (
            DatabaseAutoTestConfigRepository,
            DatabaseRuleRepository,
        )

        return DatabaseRuleRepository(get_engine()), DatabaseAutoTestConfigRepository(get_engine())
    return RuleRepository(), AutoTestConfigRepository()


@dataclass
class Services:
    """Everything a request handler or the worker needs."""

    settings: Settings
    tasks: Any
    results: Any
    rules: Any
    configs: Any
    catalog: CatalogRepository
    locker: Locker
    runner: TaskRunner
    scheduler: TaskScheduler
    hierarchy: HierarchyReporter


def build_services(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    catalog: CatalogRepository | None = None,
) -> Services:
    """Wire repositories, the runner and the scheduler together.

    ``transport`` is handed to the outbound HTTP client (tests pass an
    ``httpx.MockTransport``).
    """
    settings = settings or get_settings()
    tasks = _create_task_repo(settings)
    results = _create_result_repo(settings)
    rules, configs = _create_rule_repos(settings)
    catalog = catalog or CatalogRepository()
    locker = create_locker(settings)
    runner = TaskRunner(
        tasks,
        results,
        rules,
        configs,
        catalog,
        locker,
        executor=RequestExecutor(
            transport=transport, hard_deadline_seconds=settings.case_hard_deadline_seconds
        ),
        settings=settings,
    )
    scheduler = TaskScheduler(runner, tasks, configs, tick_seconds=settings.scheduler_tick_seconds)
    logger.info(
        "services_built",
        use_database=settings.use_database,
        lock_backend=settings.lock_backend.value,
    )
    return Services(
        settings=settings,
        tasks=tasks,
        results=results,
        rules=rules,
        configs=configs,
        catalog=catalog,
        locker=locker,
        runner=runner,
        scheduler=scheduler,
        hierarchy=HierarchyReporter(catalog, tasks),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the services attached to the app."""
    return request.app.state.services
