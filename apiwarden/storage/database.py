"""Async database engine shared by the SQLModel repositories."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from apiwarden.config.settings import get_settings

logger = structlog.get_logger(__name__)


def engine_options(database_url: str, debug: bool = False) -> dict[str, Any]:
    """Pool options for ``create_async_engine``; sqlite gets none of the pool tuning."""
    options: dict[str, Any] = {"echo": debug}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10, pool_pre_ping=True, pool_recycle=3600)
    return options


@lru_cache
def get_engine() -> AsyncEngine:
    """Return a cached async database engine (singleton per process)."""
    settings = get_settings()
    return create_async_engine(
        settings.database_url, **engine_options(settings.database_url, settings.debug)
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (for dev/testing only)."""
    import apiwarden.models.database  # noqa: F401  registers the tables

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database_tables_created", tables=sorted(SQLModel.metadata.tables))


async def dispose_engine() -> None:
    """Close pooled connections of the cached engine, if one was created."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_engine.cache_clear()
        logger.info("database_engine_disposed")
