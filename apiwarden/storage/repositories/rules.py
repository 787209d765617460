"""In-memory rule store: per-project test rules and auto-test configs."""

from __future__ import annotations

from typing import Any

import structlog

from apiwarden.exceptions import ConfigError
from apiwarden.models.domain import (
    AssertionRule,
    AutoTestConfig,
    RequestRule,
    ResponseRule,
    RuleSet,
    test_rule_adapter,
    utc_now,
)
from apiwarden.types import RuleType

logger = structlog.get_logger(__name__)

AnyRule = AssertionRule | RequestRule | ResponseRule


def apply_rule_updates(rule: AnyRule, updates: dict[str, Any]) -> AnyRule:
    """Return a validated copy of ``rule``; the rule kind cannot change."""
    new_type = updates.get("type")
    if new_type is not None and new_type != rule.type:
        raise ConfigError(f"Rule kind is immutable (is {rule.type!r}, got {new_type!r})")
    data = rule.model_dump()
    data.update({k: v for k, v in updates.items() if k not in ("id", "project_id", "created_at")})
    data["updated_at"] = utc_now()
    return test_rule_adapter.validate_python(data)


def apply_config_updates(config: AutoTestConfig, updates: dict[str, Any]) -> AutoTestConfig:
    by_alias = {f.alias: name for name, f in AutoTestConfig.model_fields.items() if f.alias}
    data = config.model_dump()
    data.update({by_alias.get(k, k): v for k, v in updates.items()})
    data["project_id"] = config.project_id
    return AutoTestConfig.model_validate(data)


class RuleRepository:
    """In-memory TestRule store."""

    def __init__(self) -> None:
        self._rules: dict[str, AnyRule] = {}

    async def create(self, rule: AnyRule) -> AnyRule:
        self._rules[rule.id] = rule.model_copy(deep=True)
        logger.info("rule_created", rule_id=rule.id, project_id=rule.project_id, type=rule.type)
        return rule

    async def get(self, project_id: str, rule_id: str) -> AnyRule | None:
        rule = self._rules.get(rule_id)
        if rule and rule.project_id == project_id:
            return rule.model_copy(deep=True)
        return None

    async def list_for_project(
        self, project_id: str, rule_type: RuleType | None = None, enabled_only: bool = False
    ) -> list[AnyRule]:
        rules = [
            r
            for r in self._rules.values()
            if r.project_id == project_id
            and (rule_type is None or r.type == rule_type)
            and (r.enabled or not enabled_only)
        ]
        rules.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rules]

    async def update(self, project_id: str, rule_id: str, **updates: Any) -> AnyRule | None:
        rule = await self.get(project_id, rule_id)
        if not rule:
            return None
        updated = apply_rule_updates(rule, updates)
        self._rules[rule_id] = updated
        logger.info("rule_updated", rule_id=rule_id, project_id=project_id)
        return updated.model_copy(deep=True)

    async def delete(self, project_id: str, rule_id: str) -> bool:
        if not await self.get(project_id, rule_id):
            return False
        del self._rules[rule_id]
        logger.info("rule_deleted", rule_id=rule_id, project_id=project_id)
        return True

    async def rule_set(self, project_id: str) -> RuleSet:
        return RuleSet.from_rules(await self.list_for_project(project_id, enabled_only=True))


class AutoTestConfigRepository:
    """In-memory AutoTestConfig store, one config per project."""

    def __init__(self) -> None:
        self._configs: dict[str, AutoTestConfig] = {}

    async def get(self, project_id: str) -> AutoTestConfig | None:
        config = self._configs.get(project_id)
        return config.model_copy() if config else None

    async def get_or_create(self, project_id: str, **defaults: Any) -> AutoTestConfig:
        config = self._configs.get(project_id)
        if config is None:
            config = AutoTestConfig.model_validate({**defaults, "project_id": project_id})
            self._configs[project_id] = config
            logger.info("auto_test_config_created", project_id=project_id)
        return config.model_copy()

    async def update(self, project_id: str, **updates: Any) -> AutoTestConfig:
        config = await self.get_or_create(project_id)
        updated = apply_config_updates(config, updates)
        self._configs[project_id] = updated
        logger.info("auto_test_config_updated", project_id=project_id)
        return updated.model_copy()
