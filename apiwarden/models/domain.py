"""Domain models shared by the runner, scheduler, reporter and API layer."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, computed_field

from apiwarden.types import (
    BodyType,
    CaseStatus,
    DataGenerationStrategy,
    ExtractSource,
    RuleType,
    RunStatus,
    TriggerSource,
    Verdict,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Catalog (read-only collaborators)
# ---------------------------------------------------------------------------


class Group(BaseModel):
    id: str = Field(default_factory=new_id)
    group_name: str


class Project(BaseModel):
    id: str = Field(default_factory=new_id)
    project_name: str
    group_id: str | None = None


class QueryParam(BaseModel):
    name: str
    required: bool = False
    example: Any | None = None


class HeaderParam(BaseModel):
    name: str
    value: str = ""
    required: bool = False


class Interface(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    title: str = ""
    path: str = ""
    method: str = "GET"
    req_query: list[QueryParam] = Field(default_factory=list)
    req_headers: list[HeaderParam] = Field(default_factory=list)
    req_body_type: BodyType = BodyType.JSON
    req_body: Any | None = None
    res_body_schema: dict[str, Any] | None = None

    @property
    def display_name(self) -> str:
        if self.title:
            return self.title
        if self.path:
            return f"{self.method.upper()} {self.path}"
        return "Unknown Interface"


class Environment(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    base_url: str = Field(default="", validation_alias=AliasChoices("base_url", "host"))
    variables: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    is_default: bool = False


# ---------------------------------------------------------------------------
# Rule store
# ---------------------------------------------------------------------------


class CustomAssertion(BaseModel):
    """A single predicate over the exchange.

    Either ``expression`` (``"data.code == 0"``) or the structured
    ``path``/``operator``/``expected`` triple must be given.
    """

    name: str = ""
    description: str = ""
    expression: str | None = None
    path: str | None = None
    operator: str = "=="
    expected: Any | None = None


class AssertionConfig(BaseModel):
    status_code_check: bool = True
    response_time_check: bool = False
    max_response_time: int = Field(default=5000, ge=0)  # ms
    response_format_check: bool = True
    custom_assertions: list[CustomAssertion] = Field(default_factory=list)


class RequestConfig(BaseModel):
    timeout: int = Field(default=30000, gt=0)  # ms, per attempt
    retry_count: int = Field(default=0, ge=0)
    retry_delay: int = Field(default=1000, ge=0)  # ms, fixed between attempts
    follow_redirects: bool = True
    verify_ssl: bool = True
    retry_on_5xx: bool = False
    default_headers: dict[str, str] = Field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay / 1000

    @property
    def case_budget_seconds(self) -> float:
        """Upper bound on wall-clock time for one case including retries."""
        attempts = self.retry_count + 1
        return self.timeout_seconds * attempts + self.retry_delay_seconds * self.retry_count


class ExtractVariable(BaseModel):
    name: str
    path: str
    source: ExtractSource = Field(
        default=ExtractSource.JSON, validation_alias=AliasChoices("source", "type")
    )


class ResponseConfig(BaseModel):
    validate_schema: bool = False
    extract_variables: list[ExtractVariable] = Field(default_factory=list)


class _RuleBase(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    description: str = ""
    enabled: bool = True
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AssertionRule(_RuleBase):
    type: Literal["assertion"] = "assertion"
    assertion_rules: AssertionConfig = Field(default_factory=AssertionConfig)


class RequestRule(_RuleBase):
    type: Literal["request"] = "request"
    request_config: RequestConfig = Field(default_factory=RequestConfig)


class ResponseRule(_RuleBase):
    type: Literal["response"] = "response"
    response_config: ResponseConfig = Field(default_factory=ResponseConfig)


TestRule = Annotated[AssertionRule | RequestRule | ResponseRule, Field(discriminator="type")]
test_rule_adapter: TypeAdapter[AssertionRule | RequestRule | ResponseRule] = TypeAdapter(TestRule)


class RuleSet(BaseModel):
    """The rules in effect for one project: the newest enabled rule of each kind."""

    assertion: AssertionRule | None = None
    request: RequestRule | None = None
    response: ResponseRule | None = None

    @classmethod
    def from_rules(cls, rules: list[AssertionRule | RequestRule | ResponseRule]) -> RuleSet:
        chosen: dict[str, AssertionRule | RequestRule | ResponseRule] = {}
        for rule in sorted(rules, key=lambda r: r.created_at, reverse=True):
            if rule.enabled and rule.type not in chosen:
                chosen[rule.type] = rule
        return cls(
            assertion=chosen.get(RuleType.ASSERTION),  # type: ignore[arg-type]
            request=chosen.get(RuleType.REQUEST),  # type: ignore[arg-type]
            response=chosen.get(RuleType.RESPONSE),  # type: ignore[arg-type]
        )

    @property
    def assertion_config(self) -> AssertionConfig:
        return self.assertion.assertion_rules if self.assertion else AssertionConfig()

    @property
    def response_config(self) -> ResponseConfig:
        return self.response.response_config if self.response else ResponseConfig()

    def request_config(self, project_config: AutoTestConfig | None = None) -> RequestConfig:
        """Effective request config: a request rule wins over project defaults."""
        if self.request:
            return self.request.request_config
        if project_config:
            return RequestConfig(
                timeout=project_config.timeout, retry_count=project_config.retry_count
            )
        return RequestConfig()


class AutoTestConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str
    enabled: bool = True
    auto_generate: bool = Field(default=True, alias="autoGenerate")
    auto_execute: bool = Field(default=False, alias="autoExecute")
    data_generation_strategy: DataGenerationStrategy = Field(
        default=DataGenerationStrategy.MOCK, alias="dataGenerationStrategy"
    )
    assertion_template: str | None = Field(default=None, alias="assertionTemplate")
    timeout: int = Field(default=30000, gt=0)
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    updated_by: str | None = Field(default=None, alias="updatedBy")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class ScheduleConfig(BaseModel):
    enabled: bool = False
    cron: str = ""
    timezone: str = "Asia/Shanghai"


class ParallelConfig(BaseModel):
    enabled: bool = False
    pool_size: int | None = Field(default=None, ge=1)


class TestCase(BaseModel):
    __test__ = False  # not a pytest class

    id: str = Field(default_factory=new_id)
    interface_id: str
    order: int = 0
    enabled: bool = True
    path_params: dict[str, Any] = Field(default_factory=dict)
    query_params: dict[str, Any] = Field(default_factory=dict)
    custom_headers: dict[str, Any] = Field(default_factory=dict)
    custom_data: Any | None = None
    expected_status: int | None = None
    max_response_time: int | None = None
    assertions: list[CustomAssertion] = Field(default_factory=list)


class RunSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    error: int = 0
    skipped: int = 0

    @property
    def finished(self) -> int:
        return self.passed + self.failed + self.error


class TaskStats(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    error: int = 0
    running: int = 0
    cancelled: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> TaskStats:
        stats = cls(**{k: v for k, v in counts.items() if k in RunStatus.__members__.values()})
        stats.total = sum(counts.values())
        return stats


class LatestResult(BaseModel):
    id: str | None = None
    status: RunStatus
    summary: RunSummary
    started_at: datetime
    completed_at: datetime | None = None
    duration: int = 0


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    project_id: str
    enabled: bool = True
    environment_id: str | None = None
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    base_url: str = ""
    common_headers: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    test_cases: list[TestCase] = Field(default_factory=list)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    latest_result: LatestResult | None = None
    stats: TaskStats = Field(default_factory=TaskStats)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def enabled_cases(self) -> list[TestCase]:
        """Enabled cases in definition order."""
        return sorted((c for c in self.test_cases if c.enabled), key=lambda c: c.order)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class RequestSnapshot(BaseModel):
    method: str = "GET"
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any | None = None


class ResponseSnapshot(BaseModel):
    status_code: int | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any | None = None
    duration: int = 0


class CaseError(BaseModel):
    message: str = ""
    code: str = ""


class AssertionCheck(BaseModel):
    name: str
    passed: bool
    expected: Any | None = None
    actual: Any | None = None
    message: str = ""


class AssertionResult(BaseModel):
    verdict: Verdict
    message: str = ""
    errors: list[str] = Field(default_factory=list)
    checks: list[AssertionCheck] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASSED


class CaseOutcome(BaseModel):
    case_id: str
    interface_id: str
    interface_name: str = ""
    order: int = 0
    status: CaseStatus = CaseStatus.PENDING
    request: RequestSnapshot = Field(default_factory=RequestSnapshot)
    response: ResponseSnapshot | None = None
    error: CaseError | None = None
    assertion_result: AssertionResult | None = None
    extracted: dict[str, Any] = Field(default_factory=dict)
    duration: int = 0
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


class TaskResult(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    environment_id: str | None = None
    status: RunStatus = RunStatus.RUNNING
    summary: RunSummary = Field(default_factory=RunSummary)
    results: list[CaseOutcome] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    duration: int = 0
    triggered_by: TriggerSource = TriggerSource.MANUAL
    triggered_by_user: str | None = None
    cancel_reason: str | None = None
    error: CaseError | None = None

    @property
    def is_final(self) -> bool:
        return self.status != RunStatus.RUNNING

    def to_latest(self) -> LatestResult:
        return LatestResult(
            id=self.id,
            status=self.status,
            summary=self.summary,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration=self.duration,
        )
