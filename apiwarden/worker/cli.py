"""CLI entry point for the standalone scheduler."""

from __future__ import annotations

import asyncio

import structlog

from apiwarden.config.logging import setup_logging
from apiwarden.config.settings import get_settings
from apiwarden.storage.database import dispose_engine
from apiwarden.web.dependencies import build_services
from apiwarden.worker.runner import SchedulerWorker

logger = structlog.get_logger(__name__)


async def _serve() -> None:
    services = build_services()
    if services.settings.catalog_file:
        await services.catalog.load_yaml(services.settings.catalog_file)
    worker = SchedulerWorker(services.scheduler, services.runner, services.locker)
    try:
        await worker.run()
    finally:
        if services.settings.use_database:
            await dispose_engine()


def main() -> None:
    """Start the scheduler process."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
