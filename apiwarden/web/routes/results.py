"""Run record API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from apiwarden.web.dependencies import Services, get_services

router = APIRouter(prefix="/auto-test/results", tags=["results"])


@router.get("/{result_id}")
async def get_result(result_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    result = await services.results.get(result_id)
    if not result:
        raise HTTPException(status_code=404, detail="Result not found")
    return result.model_dump(mode="json")
