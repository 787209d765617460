"""SQLModel database table models.

Nested run and task payloads are stored as JSON text next to the few
columns that are filtered or sorted on.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class AutoTestTaskRow(SQLModel, table=True):
    __tablename__ = "auto_test_tasks"

    id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    name: str
    enabled: bool = Field(default=True, index=True)
    schedule_enabled: bool = Field(default=False, index=True)
    task_json: str
    # latest_result and stats; written only by record_run_state
    run_state_json: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class AutoTestResultRow(SQLModel, table=True):
    __tablename__ = "auto_test_results"

    id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    status: str = Field(default="running", index=True)
    started_at: datetime = Field(default_factory=_utc_now, index=True)
    completed_at: datetime | None = None
    result_json: str


class TestRuleRow(SQLModel, table=True):
    __tablename__ = "test_rule_configs"

    id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    type: str = Field(index=True)  # assertion | request | response
    enabled: bool = Field(default=True)
    rule_json: str
    created_at: datetime = Field(default_factory=_utc_now)


class AutoTestConfigRow(SQLModel, table=True):
    __tablename__ = "auto_test_configs"

    project_id: str = Field(primary_key=True)
    config_json: str
    updated_at: datetime = Field(default_factory=_utc_now)
