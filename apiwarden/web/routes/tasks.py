"""Auto-test task API routes: CRUD, run control and history."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from apiwarden.exceptions import ConfigError
from apiwarden.models.domain import ParallelConfig, ScheduleConfig, Task, TestCase
from apiwarden.types import TriggerSource
from apiwarden.web.dependencies import Services, get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auto-test/tasks", tags=["tasks"])


class CreateTaskRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    project_id: str
    description: str = ""
    enabled: bool = True
    environment_id: str | None = None
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    base_url: str = ""
    common_headers: dict[str, Any] = Field(default_factory=dict)
    test_cases: list[TestCase] = Field(default_factory=list)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    created_by: str | None = None


class UpdateTaskRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    enabled: bool | None = None
    environment_id: str | None = None
    schedule: ScheduleConfig | None = None
    base_url: str | None = None
    common_headers: dict[str, Any] | None = None
    test_cases: list[TestCase] | None = None
    parallel: ParallelConfig | None = None


class RunRequest(BaseModel):
    environment_id: str | None = None
    triggered_by: TriggerSource = TriggerSource.MANUAL
    user: str | None = None


class RunSingleRequest(BaseModel):
    test_case_index: int = Field(ge=0)
    environment_id: str | None = None


class CancelRequest(BaseModel):
    reason: str = "cancelled"


async def _get_task(services: Services, task_id: str) -> Task:
    task = await services.tasks.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.get("")
async def list_tasks(
    project_id: str | None = None,
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    tasks = await services.tasks.list_all(project_id=project_id)
    return [t.model_dump(mode="json") for t in tasks]


@router.get("/{task_id}")
async def get_task(task_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    task = await _get_task(services, task_id)
    return task.model_dump(mode="json")


@router.post("", status_code=201)
async def create_task(
    body: CreateTaskRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    task = await services.tasks.create(Task(**body.model_dump()))
    await services.scheduler.reload_task(task.id)
    return task.model_dump(mode="json")


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    body: UpdateTaskRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    task = await services.tasks.update(task_id, **body.model_dump(exclude_unset=True))
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    await services.scheduler.reload_task(task_id)
    return task.model_dump(mode="json")


@router.delete("/{task_id}")
async def delete_task(task_id: str, services: Services = Depends(get_services)) -> Response:
    services.scheduler.remove_task(task_id)
    services.runner.cancel(task_id, reason="task_deleted")
    deleted = await services.tasks.delete(task_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Task not found")
    return Response(status_code=204)


@router.post("/{task_id}/run", status_code=202)
async def run_task(
    task_id: str,
    body: RunRequest | None = None,
    services: Services = Depends(get_services),
) -> dict[str, str]:
    body = body or RunRequest()
    try:
        result = await services.scheduler.run_now(
            task_id,
            environment_id=body.environment_id,
            user=body.user,
            trigger=body.triggered_by,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("run_triggered", task_id=task_id, result_id=result.id, trigger=body.triggered_by)
    return {"resultId": result.id, "status": result.status.value}


@router.post("/{task_id}/cancel", status_code=202)
async def cancel_task(
    task_id: str,
    body: CancelRequest | None = None,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    await _get_task(services, task_id)
    result_id = services.runner.active_result_id(task_id)
    if not services.scheduler.cancel(task_id, (body or CancelRequest()).reason):
        raise HTTPException(status_code=409, detail="Task is not running")
    return {"resultId": result_id, "status": "cancelling"}


@router.post("/{task_id}/run-single")
async def run_single_case(
    task_id: str,
    body: RunSingleRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        outcome = await services.runner.run_single(
            task_id, body.test_case_index, environment_id=body.environment_id
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return outcome.model_dump(mode="json")


@router.get("/{task_id}/history")
async def task_history(
    task_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1, le=100),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    await _get_task(services, task_id)
    size = page_size or services.settings.history_page_size
    runs, total = await services.results.list_for_task(task_id, page=page, page_size=size)
    return {
        "list": [r.model_dump(mode="json") for r in runs],
        "pagination": {
            "page": page,
            "pageSize": size,
            "total": total,
            "totalPages": (total + size - 1) // size,
        },
    }
