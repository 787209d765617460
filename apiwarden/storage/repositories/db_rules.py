"""Database-backed rule store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from apiwarden.types import RuleType

from apiwarden.models.database import AutoTestConfigRow, TestRuleRow, _utc_now, to_naive_utc
from apiwarden.models.domain import AutoTestConfig, RuleSet, test_rule_adapter
from apiwarden.storage.repositories.rules import (
    AnyRule,
    apply_config_updates,
    apply_rule_updates,
)

logger = structlog.get_logger(__name__)


class DatabaseRuleRepository:
    """PostgreSQL-backed TestRule store with the RuleRepository interface."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @staticmethod
    def _to_rule(row: TestRuleRow) -> AnyRule:
        return test_rule_adapter.validate_json(row.rule_json)

    async def create(self, rule: AnyRule) -> AnyRule:
        row = TestRuleRow(
            id=rule.id,
            project_id=rule.project_id,
            type=rule.type,
            enabled=rule.enabled,
            rule_json=rule.model_dump_json(),
            created_at=to_naive_utc(rule.created_at),
        )
        async with AsyncSession(self._engine) as session:
            session.add(row)
            await session.commit()
        logger.info("rule_created", rule_id=rule.id, project_id=rule.project_id, type=rule.type)
        return rule

    async def get(self, project_id: str, rule_id: str) -> AnyRule | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TestRuleRow, rule_id)
            if not row or row.project_id != project_id:
                return None
            return self._to_rule(row)

    async def list_for_project(
        self, project_id: str, rule_type: RuleType | None = None, enabled_only: bool = False
    ) -> list[AnyRule]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(TestRuleRow)
                .where(col(TestRuleRow.project_id) == project_id)
                .order_by(col(TestRuleRow.created_at).desc())
            )
            if rule_type is not None:
                stmt = stmt.where(col(TestRuleRow.type) == rule_type)
            if enabled_only:
                stmt = stmt.where(col(TestRuleRow.enabled).is_(True))
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_rule(r) for r in rows]

    async def update(self, project_id: str, rule_id: str, **updates: Any) -> AnyRule | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TestRuleRow, rule_id)
            if not row or row.project_id != project_id:
                return None
            rule = apply_rule_updates(self._to_rule(row), updates)
            row.enabled = rule.enabled
            row.rule_json = rule.model_dump_json()
            session.add(row)
            await session.commit()
            logger.info("rule_updated", rule_id=rule_id, project_id=project_id)
            return rule

    async def delete(self, project_id: str, rule_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            row = await session.get(TestRuleRow, rule_id)
            if not row or row.project_id != project_id:
                return False
            await session.delete(row)
            await session.commit()
            logger.info("rule_deleted", rule_id=rule_id, project_id=project_id)
            return True

    async def rule_set(self, project_id: str) -> RuleSet:
        return RuleSet.from_rules(await self.list_for_project(project_id, enabled_only=True))


class DatabaseAutoTestConfigRepository:
    """PostgreSQL-backed AutoTestConfig store (unique per project)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, project_id: str) -> AutoTestConfig | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestConfigRow, project_id)
            return AutoTestConfig.model_validate_json(row.config_json) if row else None

    async def get_or_create(self, project_id: str, **defaults: Any) -> AutoTestConfig:
        existing = await self.get(project_id)
        if existing:
            return existing
        config = AutoTestConfig.model_validate({**defaults, "project_id": project_id})
        async with AsyncSession(self._engine) as session:
            session.add(AutoTestConfigRow(project_id=project_id, config_json=config.model_dump_json()))
            await session.commit()
        logger.info("auto_test_config_created", project_id=project_id)
        return config

    async def update(self, project_id: str, **updates: Any) -> AutoTestConfig:
        config = apply_config_updates(await self.get_or_create(project_id), updates)
        async with AsyncSession(self._engine) as session:
            row = await session.get(AutoTestConfigRow, project_id)
            if row is None:
                row = AutoTestConfigRow(project_id=project_id, config_json="")
            row.config_json = config.model_dump_json()
            row.updated_at = _utc_now()
            session.add(row)
            await session.commit()
        logger.info("auto_test_config_updated", project_id=project_id)
        return config
