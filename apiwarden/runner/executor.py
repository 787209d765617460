"""HTTP execution of prepared requests with fixed-delay retry and deadlines."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from apiwarden.exceptions import ConfigError, NetworkError
from apiwarden.models.domain import ResponseSnapshot
from apiwarden.types import BodyType
from apiwarden.utils.retry import RetryPolicy
from apiwarden.utils.timing import elapsed_ms, timed

if TYPE_CHECKING:
    from apiwarden.models.domain import RequestConfig
    from apiwarden.runner.request_builder import PreparedRequest

logger = structlog.get_logger(__name__)


@dataclass
class Exchange:
    """One completed request/response pair (the final attempt)."""

    request: PreparedRequest
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""
    content_type: str = ""
    parse_error: str | None = None
    duration_ms: int = 0
    total_ms: int = 0
    attempts: int = 1

    @property
    def is_json(self) -> bool:
        return "json" in self.content_type.lower()

    def snapshot(self) -> ResponseSnapshot:
        return ResponseSnapshot(
            status_code=self.status_code,
            headers=dict(self.headers),
            body=self.body,
            duration=self.duration_ms,
        )


def parse_body(text: str, content_type: str) -> tuple[Any, str | None]:
    """Decode a response body. JSON is parsed when declared or when it looks like JSON.

    Only a body whose declared content type is JSON can be malformed; a sniffed
    body that fails to parse stays text.
    """
    if not text:
        return None, None
    declared_json = "json" in content_type.lower()
    if declared_json or text.lstrip()[:1] in ("{", "["):
        try:
            return json.loads(text), None
        except ValueError as exc:
            if declared_json:
                return text, f"Invalid JSON body: {exc}"
    return text, None


def _encode_query(query: dict[str, Any]) -> dict[str, Any]:
    return {
        k: json.dumps(v) if isinstance(v, dict) else v for k, v in query.items() if v is not None
    }


def _encode_body(request: PreparedRequest) -> dict[str, Any]:
    body = request.body
    if body is None:
        return {}
    if request.body_type == BodyType.FORM and isinstance(body, dict):
        return {"data": {k: v if isinstance(v, str) else json.dumps(v) for k, v in body.items()}}
    if isinstance(body, (str, bytes)):
        return {"content": body}
    return {"content": json.dumps(body)}


def _error_code(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "TIMEOUT"
    if isinstance(exc, httpx.ConnectError):
        return "CONNECT_ERROR"
    return "REQUEST_ERROR"


class RequestExecutor:
    """Sends PreparedRequests with httpx.

    ``transport`` is passed to every ``httpx.AsyncClient``; tests inject an
    ``httpx.MockTransport`` here.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        hard_deadline_seconds: float | None = None,
    ) -> None:
        self._transport = transport
        self._hard_deadline = hard_deadline_seconds

    def budget_seconds(self, config: RequestConfig, deadline_seconds: float | None = None) -> float:
        """Wall-clock cap for one case: every attempt plus the delays between them."""
        budget = config.case_budget_seconds
        for cap in (deadline_seconds, self._hard_deadline):
            if cap is not None and cap > 0:
                budget = min(budget, cap)
        return budget

    async def execute(
        self,
        request: PreparedRequest,
        config: RequestConfig,
        deadline_seconds: float | None = None,
    ) -> Exchange:
        """Send ``request`` under ``config``'s timeout and retry policy.

        Raises NetworkError once attempts or the deadline are exhausted. A
        retryable 5xx that is still 5xx on the last attempt is returned.
        """
        policy = RetryPolicy(retry_count=config.retry_count, delay_seconds=config.retry_delay_seconds)
        budget = self.budget_seconds(config, deadline_seconds)
        state = {"attempts": 0}
        start = time.monotonic()

        def should_retry(exc: BaseException | None, exchange: Exchange | None) -> bool:
            if exc is not None:
                return isinstance(exc, httpx.TransportError)
            return bool(config.retry_on_5xx and exchange and exchange.status_code >= 500)

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=config.timeout_seconds,
            follow_redirects=config.follow_redirects,
            verify=config.verify_ssl,
        ) as client:

            async def attempt(number: int) -> Exchange:
                state["attempts"] = number
                return await self._send(client, request.materialize(), number)

            try:
                exchange = await asyncio.wait_for(
                    policy.run(attempt, should_retry, label=f"{request.method} {request.url}"),
                    timeout=budget,
                )
            except TimeoutError as exc:
                logger.warning(
                    "request_deadline_exceeded",
                    method=request.method,
                    url=request.url,
                    attempts=state["attempts"],
                    budget_seconds=budget,
                )
                raise NetworkError(
                    f"Request exceeded its {budget:.1f}s deadline",
                    code="DEADLINE_EXCEEDED",
                    attempts=state["attempts"],
                    duration_ms=elapsed_ms(start),
                ) from exc
            except httpx.HTTPError as exc:
                logger.warning(
                    "request_failed",
                    method=request.method,
                    url=request.url,
                    attempts=state["attempts"],
                    error=str(exc) or type(exc).__name__,
                )
                raise NetworkError(
                    str(exc) or type(exc).__name__,
                    code=_error_code(exc),
                    attempts=state["attempts"],
                    duration_ms=elapsed_ms(start),
                ) from exc

        exchange.attempts = state["attempts"]
        exchange.total_ms = elapsed_ms(start)
        return exchange

    async def _send(self, client: httpx.AsyncClient, request: PreparedRequest, attempt: int) -> Exchange:
        try:
            with timed() as t:
                response = await client.request(
                    request.method,
                    request.url,
                    params=_encode_query(request.query),
                    headers=request.headers,
                    **_encode_body(request),
                )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise ConfigError(f"Invalid request URL {request.url!r}: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        body, parse_error = parse_body(response.text, content_type)
        logger.debug(
            "request_sent",
            method=request.method,
            url=request.url,
            status=response.status_code,
            attempt=attempt,
            duration_ms=t["ms"],
        )
        return Exchange(
            request=request,
            status_code=response.status_code,
            headers=dict(response.headers),
            cookies=dict(response.cookies),
            body=body,
            text=response.text,
            content_type=content_type,
            parse_error=parse_error,
            duration_ms=t["ms"],
            attempts=attempt,
        )
