import pytest

from apiwarden.exceptions import AssertionFailure, NetworkError
from apiwarden.models.domain import (
    AssertionConfig,
    CustomAssertion,
    ExtractVariable,
    ResponseConfig,
    TestCase,
)
from apiwarden.runner.assertions import AssertionEngine, compare, validate_schema
from apiwarden.runner.executor import Exchange, parse_body
from apiwarden.runner.request_builder import PreparedRequest
from apiwarden.types import ExtractSource, Verdict


def _exchange(status: int = 200, body=None, duration_ms: int = 10, **kwargs) -> Exchange:
    content_type = kwargs.pop("content_type", "application/json")
    return Exchange(
        request=PreparedRequest(method="GET", url="http://svc.test/x"),
        status_code=status,
        headers={"content-type": content_type, **kwargs.pop("headers", {})},
        body=body if body is not None else {"code": 0, "data": {"id": 5, "tags": ["a", "b"]}},
        content_type=content_type,
        duration_ms=duration_ms,
        **kwargs,
    )


@pytest.fixture()
def engine() -> AssertionEngine:
    return AssertionEngine()


@pytest.mark.unit
class TestBuiltInChecks:
    def test_default_status_is_2xx(self, engine: AssertionEngine) -> None:
        assert engine.evaluate(_exchange(204), AssertionConfig()).verdict == Verdict.PASSED
        result = engine.evaluate(_exchange(404), AssertionConfig())
        assert result.verdict == Verdict.FAILED
        assert "status_code" in result.message

    def test_expected_status_from_case(self, engine: AssertionEngine) -> None:
        case = TestCase(interface_id="i", expected_status=404)
        assert engine.evaluate(_exchange(404), AssertionConfig(), case).passed

    def test_response_time_failure_includes_duration(self, engine: AssertionEngine) -> None:
        config = AssertionConfig(response_time_check=True, max_response_time=100)
        result = engine.evaluate(_exchange(duration_ms=150), config)
        assert result.verdict == Verdict.FAILED
        assert any("150" in error for error in result.errors)

    def test_case_max_response_time_overrides_rule(self, engine: AssertionEngine) -> None:
        config = AssertionConfig(response_time_check=True, max_response_time=100)
        case = TestCase(interface_id="i", max_response_time=500)
        assert engine.evaluate(_exchange(duration_ms=150), config, case).passed

    def test_format_check_fails_on_broken_json(self, engine: AssertionEngine) -> None:
        exchange = _exchange(body="{broken", parse_error="Invalid JSON body")
        result = engine.evaluate(exchange, AssertionConfig())
        assert not result.passed
        assert [c.name for c in result.checks if not c.passed] == ["response_format"]

    def test_format_check_passes_plain_text(self, engine: AssertionEngine) -> None:
        exchange = _exchange(body="pong", content_type="text/plain")
        assert engine.evaluate(exchange, AssertionConfig()).passed

    def test_format_check_passes_bracketed_plain_text(self, engine: AssertionEngine) -> None:
        text = "[INFO] service healthy"
        body, parse_error = parse_body(text, "text/plain")
        exchange = _exchange(body=body, content_type="text/plain", parse_error=parse_error)
        assert engine.evaluate(exchange, AssertionConfig()).verdict == Verdict.PASSED

    def test_all_checks_run_without_short_circuit(self, engine: AssertionEngine) -> None:
        config = AssertionConfig(
            response_time_check=True,
            max_response_time=1,
            custom_assertions=[CustomAssertion(expression="data.id == 6")],
        )
        result = engine.evaluate(_exchange(500, duration_ms=50), config)
        failed = {c.name for c in result.checks if not c.passed}
        assert failed == {"status_code", "response_time", "data.id == 6"}

    def test_schema_validation(self, engine: AssertionEngine) -> None:
        schema = {
            "type": "object",
            "required": ["code", "data"],
            "properties": {"data": {"type": "object", "required": ["name"]}},
        }
        result = engine.evaluate(
            _exchange(), AssertionConfig(), response_config=ResponseConfig(validate_schema=True), schema=schema
        )
        assert not result.passed
        assert any("data.name" in e for e in result.errors)

    def test_deterministic(self, engine: AssertionEngine) -> None:
        config = AssertionConfig(custom_assertions=[CustomAssertion(expression="code == 0")])
        exchange = _exchange()
        first = engine.evaluate(exchange, config)
        second = engine.evaluate(exchange, config)
        assert first == second

    def test_error_verdict(self, engine: AssertionEngine) -> None:
        result = engine.error(NetworkError("connection refused", attempts=3))
        assert result.verdict == Verdict.ERROR
        assert "connection refused" in result.message


@pytest.mark.unit
class TestCustomAssertions:
    @pytest.mark.parametrize(
        "expression",
        [
            "data.id == 5",
            "status == 200",
            "code != 1",
            "data.id >= 5",
            "data.id < 10",
            "data.tags contains a",
            "data.tags not_contains z",
            "data.id exists",
            "data.missing not_exists",
            "headers.content-type contains json",
            "headers.content-type matches ^application/",
            "status in [200, 201]",
            "data.tags type array",
            "duration <= 10",
        ],
    )
    def test_expression_passes(self, engine: AssertionEngine, expression: str) -> None:
        config = AssertionConfig(custom_assertions=[CustomAssertion(expression=expression)])
        result = engine.evaluate(_exchange(), config)
        assert result.passed, result.errors

    def test_structured_predicate(self, engine: AssertionEngine) -> None:
        case = TestCase(
            interface_id="i",
            assertions=[CustomAssertion(name="id", path="body.data.id", operator=">", expected=100)],
        )
        result = engine.evaluate(_exchange(), AssertionConfig(), case)
        assert not result.passed
        check = next(c for c in result.checks if c.name == "id")
        assert check.actual == 5
        assert check.expected == 100

    def test_invalid_expression_fails(self, engine: AssertionEngine) -> None:
        config = AssertionConfig(custom_assertions=[CustomAssertion(expression="nonsense")])
        assert not engine.evaluate(_exchange(), config).passed

    def test_unknown_operator_fails(self) -> None:
        with pytest.raises(ValueError):
            compare(1, "~=", 1)


@pytest.mark.unit
class TestExtraction:
    def test_extracts_from_body_header_and_cookie(self, engine: AssertionEngine) -> None:
        exchange = _exchange(headers={"x-request-id": "r-1"}, cookies={"session": "s-1"})
        config = ResponseConfig(
            extract_variables=[
                ExtractVariable(name="userId", path="$.data.id"),
                ExtractVariable(name="rid", path="X-Request-Id", source=ExtractSource.HEADER),
                ExtractVariable(name="sid", path="session", type="cookie"),
                ExtractVariable(name="nothing", path="data.nope"),
            ]
        )
        assert engine.extract(exchange, config) == {"userId": 5, "rid": "r-1", "sid": "s-1"}


@pytest.mark.unit
class TestValidateSchema:
    def test_extra_keys_allowed(self) -> None:
        assert validate_schema({"a": 1, "b": 2}, {"type": "object", "required": ["a"]}) == []

    def test_type_mismatch_in_list(self) -> None:
        errors = validate_schema([1, "x"], {"type": "array", "items": {"type": "integer"}})
        assert errors == ["$[1]: expected integer, got string"]


@pytest.mark.unit
class TestVerify:
    def test_returns_result_when_passed(self, engine: AssertionEngine) -> None:
        assert engine.verify(_exchange(), AssertionConfig()).passed

    def test_raises_assertion_failure(self, engine: AssertionEngine) -> None:
        with pytest.raises(AssertionFailure) as exc_info:
            engine.verify(_exchange(404), AssertionConfig())
        assert exc_info.value.result.verdict == Verdict.FAILED
        assert "status_code" in str(exc_info.value)
