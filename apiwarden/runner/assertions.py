"""Evaluate an HTTP exchange against the configured checks."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

import structlog

from apiwarden.exceptions import AssertionFailure
from apiwarden.models.domain import AssertionCheck, AssertionResult, CustomAssertion
from apiwarden.runner.request_builder import lookup
from apiwarden.types import ExtractSource, Verdict

if TYPE_CHECKING:
    from apiwarden.models.domain import AssertionConfig, ResponseConfig, TestCase
    from apiwarden.runner.executor import Exchange

logger = structlog.get_logger(__name__)

OPERATORS = (
    "not_contains",
    "not_exists",
    "contains",
    "exists",
    "matches",
    "type",
    "in",
    "==",
    "!=",
    ">=",
    "<=",
    ">",
    "<",
)
EXPRESSION_PATTERN = re.compile(
    r"^\s*(?P<path>\S+)\s*(?P<op>"
    + "|".join(re.escape(op) if not op.isalpha() and "_" not in op else rf"\b{op}\b" for op in OPERATORS)
    + r")\s*(?P<value>.*?)\s*$"
)
JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
    "null": (type(None),),
}


def json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def matches_type(value: Any, expected: str) -> bool:
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    types = JSON_TYPES.get(expected)
    return types is None or isinstance(value, types)


def validate_schema(value: Any, schema: dict[str, Any], path: str = "$") -> list[str]:
    """Check required keys and declared types, recursively. Extra keys are allowed."""
    errors: list[str] = []
    expected_type = schema.get("type")
    if isinstance(expected_type, str) and not matches_type(value, expected_type):
        return [f"{path}: expected {expected_type}, got {json_type(value)}"]
    if isinstance(value, dict):
        properties = schema.get("properties") or {}
        for key in schema.get("required") or []:
            if key not in value:
                errors.append(f"{path}.{key}: required key missing")
        for key, sub_schema in properties.items():
            if key in value and isinstance(sub_schema, dict):
                errors.extend(validate_schema(value[key], sub_schema, f"{path}.{key}"))
    elif isinstance(value, list) and isinstance(schema.get("items"), dict):
        for index, item in enumerate(value):
            errors.extend(validate_schema(item, schema["items"], f"{path}[{index}]"))
    return errors


def parse_expected(raw: str) -> Any:
    if raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
            return raw[1:-1]
        return raw


def _loose_equal(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    if isinstance(actual, str) or isinstance(expected, str):
        return str(actual) == str(expected)
    return False


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one assertion operator. Raises ValueError for unknown operators."""
    if operator == "==":
        return _loose_equal(actual, expected)
    if operator == "!=":
        return not _loose_equal(actual, expected)
    if operator in (">", ">=", "<", "<="):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return {
            ">": left > right,
            ">=": left >= right,
            "<": left < right,
            "<=": left <= right,
        }[operator]
    if operator in ("contains", "not_contains"):
        if isinstance(actual, str):
            found = str(expected) in actual
        elif isinstance(actual, (list, dict)):
            found = expected in actual
        else:
            found = False
        return found if operator == "contains" else not found
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    if operator == "matches":
        return actual is not None and re.search(str(expected), str(actual)) is not None
    if operator == "in":
        if isinstance(expected, (list, dict)):
            return actual in expected
        return str(actual) in str(expected)
    if operator == "type":
        return matches_type(actual, str(expected))
    raise ValueError(f"Unknown operator {operator!r}")


def resolve_path(exchange: Exchange, path: str) -> Any:
    """Read a value from the exchange. Roots: body (default), status, headers, duration."""
    path = path.strip()
    if path.startswith("$."):
        path = path[2:]
    root, _, rest = path.partition(".")
    if root in ("status", "status_code", "statusCode"):
        return exchange.status_code
    if root in ("duration", "response_time"):
        return exchange.duration_ms
    if root == "headers":
        return exchange.headers.get(rest.lower()) if rest else exchange.headers
    if root == "body":
        return lookup(exchange.body, rest) if rest else exchange.body
    return lookup(exchange.body, path)


class AssertionEngine:
    """Runs every configured check against an exchange; never short-circuits."""

    def evaluate(
        self,
        exchange: Exchange,
        config: AssertionConfig,
        case: TestCase | None = None,
        response_config: ResponseConfig | None = None,
        schema: dict[str, Any] | None = None,
    ) -> AssertionResult:
        checks: list[AssertionCheck] = []
        expected_status = case.expected_status if case else None
        max_time = case.max_response_time if case else None

        if config.status_code_check or expected_status is not None:
            checks.append(self._check_status(exchange, expected_status))
        if config.response_time_check or max_time is not None:
            limit = max_time if max_time is not None else config.max_response_time
            checks.append(self._check_response_time(exchange, limit))
        if config.response_format_check:
            checks.append(self._check_format(exchange, expect_json=bool(schema)))
        if response_config and response_config.validate_schema and schema:
            checks.append(self._check_schema(exchange, schema))
        for assertion in [*config.custom_assertions, *(case.assertions if case else [])]:
            checks.append(self._check_custom(exchange, assertion))

        failed = [c for c in checks if not c.passed]
        if failed:
            return AssertionResult(
                verdict=Verdict.FAILED,
                message="Failed checks: " + ", ".join(c.name for c in failed),
                errors=[c.message for c in failed],
                checks=checks,
            )
        return AssertionResult(verdict=Verdict.PASSED, message="All checks passed", checks=checks)

    def verify(
        self,
        exchange: Exchange,
        config: AssertionConfig,
        case: TestCase | None = None,
        response_config: ResponseConfig | None = None,
        schema: dict[str, Any] | None = None,
    ) -> AssertionResult:
        """Evaluate and raise AssertionFailure unless every check passed."""
        result = self.evaluate(exchange, config, case, response_config, schema)
        if not result.passed:
            raise AssertionFailure(result)
        return result

    def error(self, exc: Exception) -> AssertionResult:
        """Verdict for an exchange that never completed."""
        message = str(exc) or type(exc).__name__
        return AssertionResult(verdict=Verdict.ERROR, message=message, errors=[message])

    def extract(self, exchange: Exchange, response_config: ResponseConfig | None) -> dict[str, Any]:
        """Pull variables out of the response for later cases in the run."""
        extracted: dict[str, Any] = {}
        for var in response_config.extract_variables if response_config else []:
            if var.source == ExtractSource.HEADER:
                value = exchange.headers.get(var.path.lower())
            elif var.source == ExtractSource.COOKIE:
                value = exchange.cookies.get(var.path)
            else:
                path = var.path[2:] if var.path.startswith("$.") else var.path
                if path.startswith("body."):
                    path = path[5:]
                value = lookup(exchange.body, path)
            if value is None:
                logger.debug("variable_not_extracted", name=var.name, path=var.path, source=var.source)
                continue
            extracted[var.name] = value
        return extracted

    @staticmethod
    def _check_status(exchange: Exchange, expected: int | None) -> AssertionCheck:
        actual = exchange.status_code
        if expected is not None:
            passed = actual == expected
            return AssertionCheck(
                name="status_code",
                passed=passed,
                expected=expected,
                actual=actual,
                message="" if passed else f"Expected status {expected}, got {actual}",
            )
        passed = 200 <= actual < 300
        return AssertionCheck(
            name="status_code",
            passed=passed,
            expected="2xx",
            actual=actual,
            message="" if passed else f"Request failed with status {actual}",
        )

    @staticmethod
    def _check_response_time(exchange: Exchange, limit: int) -> AssertionCheck:
        actual = exchange.duration_ms
        passed = actual <= limit
        return AssertionCheck(
            name="response_time",
            passed=passed,
            expected=limit,
            actual=actual,
            message="" if passed else f"Response time {actual}ms exceeds limit {limit}ms",
        )

    @staticmethod
    def _check_format(exchange: Exchange, expect_json: bool) -> AssertionCheck:
        if exchange.parse_error:
            return AssertionCheck(
                name="response_format",
                passed=False,
                expected="json",
                actual=exchange.content_type or "unknown",
                message=exchange.parse_error,
            )
        if (exchange.is_json or expect_json) and exchange.body is not None:
            passed = isinstance(exchange.body, (dict, list))
            return AssertionCheck(
                name="response_format",
                passed=passed,
                expected="json",
                actual=json_type(exchange.body),
                message="" if passed else "Response body is not JSON",
            )
        return AssertionCheck(
            name="response_format", passed=True, actual=exchange.content_type or "empty"
        )

    @staticmethod
    def _check_schema(exchange: Exchange, schema: dict[str, Any]) -> AssertionCheck:
        errors = validate_schema(exchange.body, schema)
        return AssertionCheck(
            name="schema",
            passed=not errors,
            expected=schema.get("type", "object"),
            actual=json_type(exchange.body),
            message="; ".join(errors),
        )

    @staticmethod
    def _check_custom(exchange: Exchange, assertion: CustomAssertion) -> AssertionCheck:
        path, operator, expected = assertion.path, assertion.operator, assertion.expected
        if assertion.expression:
            match = EXPRESSION_PATTERN.match(assertion.expression)
            if not match:
                return AssertionCheck(
                    name=assertion.name or assertion.expression,
                    passed=False,
                    message=f"Invalid assertion expression: {assertion.expression!r}",
                )
            path, operator = match.group("path"), match.group("op")
            expected = parse_expected(match.group("value"))
        name = assertion.name or assertion.expression or f"{path} {operator} {expected}"
        if not path:
            return AssertionCheck(name=name, passed=False, message="Assertion has no path")

        actual = resolve_path(exchange, path)
        try:
            passed = compare(actual, operator, expected)
        except (ValueError, re.error) as exc:
            return AssertionCheck(name=name, passed=False, expected=expected, actual=actual, message=str(exc))
        return AssertionCheck(
            name=name,
            passed=passed,
            expected=expected,
            actual=actual,
            message="" if passed else f"{path} {operator} {expected!r} failed (actual: {actual!r})",
        )
