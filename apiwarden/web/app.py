"""FastAPI application factory."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from apiwarden.config.logging import setup_logging
from apiwarden.config.settings import get_settings
from apiwarden.exceptions import ConfigError, NotFoundError, RunInProgressError, StorageError
from apiwarden.web.dependencies import Services, build_services, get_services
from apiwarden.web.middleware import RequestIDMiddleware
from apiwarden.web.routes.monitor import router as monitor_router
from apiwarden.web.routes.results import router as results_router
from apiwarden.web.routes.rules import router as rules_router
from apiwarden.web.routes.tasks import router as tasks_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services: Services = app.state.services
    if services.settings.catalog_file:
        await services.catalog.load_yaml(services.settings.catalog_file)
    scheduler_task: asyncio.Task[None] | None = None
    if services.settings.scheduler_enabled:
        await services.scheduler.load()
        scheduler_task = asyncio.create_task(services.scheduler.run(), name="scheduler")
    try:
        yield
    finally:
        services.scheduler.stop()
        if scheduler_task:
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
        await services.runner.shutdown()
        await services.locker.close()
        if services.settings.use_database:
            from apiwarden.storage.database import dispose_engine

            await dispose_engine()
        logger.info("app_shutdown")


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = services.settings if services else get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)

    app = FastAPI(
        title="apiwarden",
        description="Automated API test pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services(settings)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(RunInProgressError)
    async def run_in_progress_handler(request: Request, exc: RunInProgressError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": "Storage error"})

    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)) -> dict[str, object]:
        from apiwarden.web.health import check_health

        return await check_health(services)

    for router in (tasks_router, results_router, monitor_router, rules_router):
        app.include_router(router)

    logger.info("app_created")
    return app
