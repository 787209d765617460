"""Rule store API routes: per-project test rules and auto-test config."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import Response

from apiwarden.models.domain import test_rule_adapter
from apiwarden.types import RuleType
from apiwarden.web.dependencies import Services, get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/projects/{project_id}", tags=["rules"])


@router.get("/test-rules")
async def list_rules(
    project_id: str,
    type: RuleType | None = None,  # noqa: A002
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    rules = await services.rules.list_for_project(project_id, rule_type=type)
    return [r.model_dump(mode="json") for r in rules]


@router.post("/test-rules", status_code=201)
async def create_rule(
    project_id: str,
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    data = {k: v for k, v in body.items() if k not in ("id", "created_at", "updated_at")}
    rule = test_rule_adapter.validate_python({**data, "project_id": project_id})
    await services.rules.create(rule)
    return rule.model_dump(mode="json")


@router.put("/test-rules/{rule_id}")
async def update_rule(
    project_id: str,
    rule_id: str,
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    rule = await services.rules.update(project_id, rule_id, **body)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule.model_dump(mode="json")


@router.delete("/test-rules/{rule_id}")
async def delete_rule(
    project_id: str, rule_id: str, services: Services = Depends(get_services)
) -> Response:
    if not await services.rules.delete(project_id, rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return Response(status_code=204)


@router.get("/auto-test-config")
async def get_auto_test_config(
    project_id: str, services: Services = Depends(get_services)
) -> dict[str, Any]:
    config = await services.configs.get_or_create(project_id)
    return config.model_dump(mode="json", by_alias=True)


@router.put("/auto-test-config")
async def update_auto_test_config(
    project_id: str,
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    updates = {k: v for k, v in body.items() if k not in ("project_id", "projectId")}
    config = await services.configs.update(project_id, **updates)
    return config.model_dump(mode="json", by_alias=True)
