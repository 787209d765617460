"""Group -> Project -> Task rollup for the monitoring dashboard."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from apiwarden.models.domain import ScheduleConfig, TaskStats
from apiwarden.types import RunStatus

if TYPE_CHECKING:
    from apiwarden.models.domain import Environment, Group, Project, Task
    from apiwarden.storage.repositories.catalog import CatalogRepository

logger = structlog.get_logger(__name__)


class _Node(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LatestResultView(_Node):
    status: RunStatus
    summary: dict[str, int]
    started_at: datetime
    completed_at: datetime | None = None
    duration: int = 0


class EnvironmentView(_Node):
    name: str
    base_url: str


class TaskNode(_Node):
    id: str = Field(serialization_alias="_id")
    name: str
    description: str = ""
    enabled: bool
    schedule: ScheduleConfig
    base_url: str = ""
    created_by: str | None = Field(default=None, serialization_alias="createdBy")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    latest_result: LatestResultView | None = Field(default=None, serialization_alias="latestResult")
    stats: TaskStats
    environment: EnvironmentView | None = None


class ProjectNode(_Node):
    id: str = Field(serialization_alias="_id")
    project_name: str
    group_id: str | None = None
    tasks: list[TaskNode] = Field(default_factory=list)
    task_count: int = Field(default=0, serialization_alias="taskCount")


class GroupNode(_Node):
    id: str = Field(serialization_alias="_id")
    group_name: str
    projects: list[ProjectNode] = Field(default_factory=list)
    project_count: int = Field(default=0, serialization_alias="projectCount")
    total_tasks: int = Field(default=0, serialization_alias="totalTasks")


def task_node(task: Task, environment: Environment | None) -> TaskNode:
    latest = None
    if task.latest_result:
        latest = LatestResultView(
            status=task.latest_result.status,
            summary=task.latest_result.summary.model_dump(),
            started_at=task.latest_result.started_at,
            completed_at=task.latest_result.completed_at,
            duration=task.latest_result.duration,
        )
    return TaskNode(
        id=task.id,
        name=task.name,
        description=task.description,
        enabled=task.enabled,
        schedule=task.schedule,
        base_url=task.base_url,
        created_by=task.created_by,
        created_at=task.created_at,
        updated_at=task.updated_at,
        latest_result=latest,
        stats=task.stats,
        environment=(
            EnvironmentView(name=environment.name, base_url=environment.base_url)
            if environment
            else None
        ),
    )


def build_hierarchy(
    groups: list[Group],
    projects: list[Project],
    tasks: list[Task],
    environments: list[Environment] | None = None,
) -> list[GroupNode]:
    """Roll tasks up into projects and projects into groups.

    Projects without a known group and tasks without a known project are
    left out, as are groups with neither projects nor tasks. Groups are
    sorted by name.
    """
    env_by_id = {e.id: e for e in environments or []}
    group_nodes: dict[str, GroupNode] = {}
    for group in groups:
        group_nodes.setdefault(group.id, GroupNode(id=group.id, group_name=group.group_name))

    project_nodes: dict[str, ProjectNode] = {}
    for project in projects:
        if project.group_id in group_nodes and project.id not in project_nodes:
            project_nodes[project.id] = ProjectNode(
                id=project.id, project_name=project.project_name, group_id=project.group_id
            )

    seen_tasks: set[str] = set()
    for task in tasks:
        node = project_nodes.get(task.project_id)
        if node is None or task.id in seen_tasks:
            continue
        seen_tasks.add(task.id)
        node.tasks.append(task_node(task, env_by_id.get(task.environment_id or "")))
        node.task_count = len(node.tasks)

    for node in project_nodes.values():
        group = group_nodes[node.group_id or ""]
        group.projects.append(node)
        group.project_count = len(group.projects)
        group.total_tasks += node.task_count

    hierarchy = [g for g in group_nodes.values() if g.project_count > 0 or g.total_tasks > 0]
    hierarchy.sort(key=lambda g: g.group_name)
    return hierarchy


class HierarchyReporter:
    """Reads the catalog and task store and builds the hierarchy view."""

    def __init__(self, catalog: CatalogRepository, tasks: Any) -> None:
        self._catalog = catalog
        self._tasks = tasks

    async def build(self) -> list[GroupNode]:
        groups = await self._catalog.list_groups()
        projects = await self._catalog.list_projects()
        environments = await self._catalog.list_environments()
        tasks = await self._tasks.list_all()
        hierarchy = build_hierarchy(groups, projects, tasks, environments)
        logger.info(
            "hierarchy_built",
            groups=len(hierarchy),
            projects=sum(g.project_count for g in hierarchy),
            tasks=sum(g.total_tasks for g in hierarchy),
        )
        return hierarchy
