"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from apiwarden.config.settings import Settings
from apiwarden.models.domain import Environment, Group, Interface, Project
from apiwarden.storage.database import init_db
from apiwarden.storage.repositories.catalog import CatalogRepository
from apiwarden.web.app import create_app
from apiwarden.web.dependencies import build_services

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture()
def settings() -> Settings:
    """Settings for tests: in-memory stores, no background scheduler, fast ticks."""
    return Settings(
        use_database=False,
        scheduler_enabled=False,
        scheduler_tick_seconds=0.01,
        default_base_url="http://fallback.test",
        task_hard_deadline_seconds=30.0,
        case_hard_deadline_seconds=10.0,
        _env_file=None,
    )


@pytest.fixture()
async def catalog() -> CatalogRepository:
    """A catalog with one group, one project, two interfaces and a default environment."""
    repo = CatalogRepository()
    await repo.add_group(Group(id="g1", group_name="Payments"))
    await repo.add_project(Project(id="p1", project_name="Billing API", group_id="g1"))
    await repo.add_interface(
        Interface(id="if-list", project_id="p1", title="List users", path="/users", method="GET")
    )
    await repo.add_interface(
        Interface(
            id="if-get",
            project_id="p1",
            title="Get user",
            path="/users/{userId}",
            method="GET",
        )
    )
    await repo.add_interface(
        Interface(
            id="if-create",
            project_id="p1",
            title="Create user",
            path="/users",
            method="POST",
            req_body={"name": "default"},
        )
    )
    await repo.add_environment(
        Environment(
            id="env1",
            project_id="p1",
            name="staging",
            base_url="api.staging.test/",
            variables={"token": "secret-token", "userId": "42"},
            is_default=True,
        )
    )
    return repo


@pytest.fixture()
def ok_handler() -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 0, "data": {"id": 7}})

    return handler


@pytest.fixture()
def services_factory(settings: Settings, catalog: CatalogRepository):
    """Build services whose outbound HTTP goes to the given handler."""

    def factory(handler: Handler):
        return build_services(settings, transport=httpx.MockTransport(handler), catalog=catalog)

    return factory


@pytest.fixture()
def services(services_factory, ok_handler):
    return services_factory(ok_handler)


@pytest.fixture()
def app(services):
    """Create a fresh app instance for tests."""
    return create_app(services)


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()
