"""Fixed-delay retry policy for outbound requests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry up to ``retry_count`` times, sleeping ``delay_seconds`` between attempts.

    The delay is constant; there is no backoff.
    """

    retry_count: int = 0
    delay_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1

    async def run(
        self,
        func: Callable[[int], Awaitable[T]],
        should_retry: Callable[[BaseException | None, Any], bool],
        label: str = "",
    ) -> T:
        """Call ``func(attempt)`` until it succeeds or attempts run out.

        ``should_retry(exc, result)`` decides whether an attempt is retried;
        it is called with ``(exc, None)`` when ``func`` raised and with
        ``(None, result)`` otherwise. The last exception is re-raised, or the
        last result returned, once attempts are exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await func(attempt)
            except Exception as exc:
                if attempt >= self.max_attempts or not should_retry(exc, None):
                    raise
                logger.debug(
                    "retry_attempt",
                    label=label,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc),
                    wait_seconds=self.delay_seconds,
                )
            else:
                if attempt >= self.max_attempts or not should_retry(None, result):
                    return result
                logger.debug(
                    "retry_attempt",
                    label=label,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    wait_seconds=self.delay_seconds,
                )
            await asyncio.sleep(self.delay_seconds)
        raise AssertionError("unreachable")  # pragma: no cover
