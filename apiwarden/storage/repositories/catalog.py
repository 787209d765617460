"""In-memory catalog of groups, projects, interfaces and environments.

The catalog is owned by the documentation side of the platform; the test
pipeline only reads from it. Writes exist for seeding and tests.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from apiwarden.exceptions import ConfigError
from apiwarden.models.domain import Environment, Group, Interface, Project

logger = structlog.get_logger(__name__)


class CatalogRepository:
    """Read-mostly store of the objects test cases point at."""

    def __init__(self) -> None:
        self._groups: dict[str, Group] = {}
        self._projects: dict[str, Project] = {}
        self._interfaces: dict[str, Interface] = {}
        self._environments: dict[str, Environment] = {}

    async def add_group(self, group: Group) -> Group:
        self._groups[group.id] = group
        logger.debug("catalog_group_added", group_id=group.id)
        return group

    async def add_project(self, project: Project) -> Project:
        self._projects[project.id] = project
        logger.debug("catalog_project_added", project_id=project.id, group_id=project.group_id)
        return project

    async def add_interface(self, interface: Interface) -> Interface:
        self._interfaces[interface.id] = interface
        logger.debug("catalog_interface_added", interface_id=interface.id)
        return interface

    async def add_environment(self, environment: Environment) -> Environment:
        self._environments[environment.id] = environment
        logger.debug("catalog_environment_added", environment_id=environment.id)
        return environment

    async def list_groups(self) -> list[Group]:
        return list(self._groups.values())

    async def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    async def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    async def get_interface(self, interface_id: str) -> Interface | None:
        return self._interfaces.get(interface_id)

    async def get_environment(self, environment_id: str) -> Environment | None:
        return self._environments.get(environment_id)

    async def list_environments(self, project_id: str | None = None) -> list[Environment]:
        return [
            e
            for e in self._environments.values()
            if project_id is None or e.project_id == project_id
        ]

    async def get_environment_by_name(self, project_id: str, name: str) -> Environment | None:
        for env in await self.list_environments(project_id):
            if env.name == name:
                return env
        return None

    async def get_default_environment(self, project_id: str) -> Environment | None:
        envs = await self.list_environments(project_id)
        for env in envs:
            if env.is_default:
                return env
        return envs[0] if envs else None

    async def load_yaml(self, path: str | Path) -> None:
        """Seed the catalog from a YAML document.

        Expected top-level keys: ``groups``, ``projects``, ``interfaces``
        and ``environments``, each a list of mappings.
        """
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Catalog file {path} must contain a mapping")
        try:
            for item in data.get("groups") or []:
                await self.add_group(Group.model_validate(item))
            for item in data.get("projects") or []:
                await self.add_project(Project.model_validate(item))
            for item in data.get("interfaces") or []:
                await self.add_interface(Interface.model_validate(item))
            for item in data.get("environments") or []:
                await self.add_environment(Environment.model_validate(item))
        except ValidationError as exc:
            raise ConfigError(f"Invalid catalog file {path}: {exc}") from exc
        logger.info(
            "catalog_loaded",
            path=str(path),
            groups=len(self._groups),
            projects=len(self._projects),
            interfaces=len(self._interfaces),
            environments=len(self._environments),
        )
