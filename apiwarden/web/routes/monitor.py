"""Monitoring dashboard API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from apiwarden.web.dependencies import Services, get_services

router = APIRouter(prefix="/monitor", tags=["monitor"])


@router.get("/hierarchy")
async def get_hierarchy(services: Services = Depends(get_services)) -> list[dict[str, Any]]:
    hierarchy = await services.hierarchy.build()
    return [group.model_dump(mode="json", by_alias=True) for group in hierarchy]
