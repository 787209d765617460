"""Exception hierarchy for apiwarden."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apiwarden.models.domain import AssertionResult


class ApiWardenError(Exception):
    """Base exception for all apiwarden errors."""


class ConfigError(ApiWardenError):
    """Raised for unresolvable requests, malformed rules or invalid schedules.

    Never retried.
    """

    code = "CONFIG_ERROR"


class NetworkError(ApiWardenError):
    """Raised when a request could not complete at the transport level."""

    def __init__(
        self,
        message: str,
        code: str = "REQUEST_ERROR",
        attempts: int = 1,
        duration_ms: int = 0,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.attempts = attempts
        self.duration_ms = duration_ms


class AssertionFailure(ApiWardenError):
    """Raised when an exchange completed but one or more checks did not pass."""

    def __init__(self, result: AssertionResult) -> None:
        super().__init__(result.message)
        self.result = result


class CancellationError(ApiWardenError):
    """Raised when a run is aborted by a cancel signal or hard deadline."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"Run cancelled: {reason}")
        self.reason = reason


class RunInProgressError(ApiWardenError):
    """Raised when a task is triggered while a run of it is still active."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already running")
        self.task_id = task_id


class NotFoundError(ApiWardenError):
    """Raised when a referenced task, result, rule or catalog entry is missing."""


class StorageError(ApiWardenError):
    """Raised when storage operations fail."""
