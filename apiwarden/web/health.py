"""Health check endpoint logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from apiwarden.web.dependencies import Services

logger = structlog.get_logger(__name__)


async def check_health(services: Services) -> dict[str, object]:
    """Return application health status with DB and lock backend probes."""
    settings = services.settings
    result: dict[str, object] = {
        "status": "healthy",
        "version": "0.1.0",
        "lock_backend": settings.lock_backend.value,
        "scheduled_tasks": len(services.scheduler.entries),
        "database": "disabled",
    }

    if settings.use_database:
        result["database"] = "connected"
        try:
            from sqlalchemy import text

            from apiwarden.storage.database import get_engine

            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("health_check_db_failed", error=str(exc))
            result["database"] = "unavailable"
            result["status"] = "degraded"

    try:
        await services.locker.is_locked("health-probe")
    except Exception as exc:
        logger.warning("health_check_locker_failed", error=str(exc))
        result["lock_backend_status"] = "unavailable"
        result["status"] = "degraded"

    return result
