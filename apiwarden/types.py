"""Enums and type aliases for apiwarden."""

from enum import StrEnum


class RuleType(StrEnum):
    ASSERTION = "assertion"
    REQUEST = "request"
    RESPONSE = "response"


class RunStatus(StrEnum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"


class CaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class Verdict(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class TriggerSource(StrEnum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"


class BodyType(StrEnum):
    JSON = "json"
    FORM = "form"
    RAW = "raw"


class DataGenerationStrategy(StrEnum):
    MOCK = "mock"
    EXAMPLE = "example"
    HISTORY = "history"


class ExtractSource(StrEnum):
    JSON = "json"
    HEADER = "header"
    COOKIE = "cookie"


class LockBackend(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"
