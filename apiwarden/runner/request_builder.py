"""Compile an interface definition plus a test case into a concrete request."""

from __future__ import annotations

import json
import random
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import structlog

from apiwarden.exceptions import ConfigError
from apiwarden.models.domain import RequestSnapshot
from apiwarden.types import BodyType

if TYPE_CHECKING:
    from apiwarden.models.domain import CaseOutcome, Environment, Interface, TestCase

logger = structlog.get_logger(__name__)

VARIABLE_PATTERN = re.compile(r"\$\{([\w.]+)\}")
RECORD_PATTERN = re.compile(
    r"\$\.records\[(\d+)\]\.(request|response)\.(body|headers|query)\.([\w.]+)"
)
PATH_TOKEN_PATTERN = re.compile(r"(?<!\$)\{(\w+)\}|(?<=/):(\w+)")
RANDOM_TOKEN_PATTERN = re.compile(r"\{\{\$(uuid|timestamp|randomInt)\}\}")

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
PLACEHOLDER_AUTH_VALUES = frozenset({"", "bearer", "bearer token", "bearer <token>", "token"})
TOKEN_VARIABLES = ("token", "authToken", "AUTH_TOKEN", "TOKEN")
DEFAULT_CONTENT_TYPES = {
    BodyType.JSON: "application/json",
    BodyType.FORM: "application/x-www-form-urlencoded",
    BodyType.RAW: "text/plain",
}


def lookup(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts and lists. Returns None if absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def normalize_base_url(base_url: str) -> str:
    base_url = base_url.strip()
    if base_url and not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", base_url):
        base_url = f"http://{base_url}"
    return base_url.rstrip("/")


def is_placeholder_auth(value: Any) -> bool:
    return value is None or str(value).strip().lower() in PLACEHOLDER_AUTH_VALUES


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == {} or value == []


class VariableResolver:
    """Resolves ``${name}`` and ``$.records[i]...`` references in request values.

    ``variables`` are the environment variables merged with anything
    extracted from earlier cases of the same run; ``records`` are the
    outcomes of those earlier cases in order.
    """

    def __init__(
        self,
        variables: dict[str, Any] | None = None,
        records: list[CaseOutcome] | None = None,
    ) -> None:
        self.variables = variables or {}
        self.records = records or []

    def _record_value(self, match: re.Match[str]) -> Any:
        index, side, source, path = match.groups()
        if int(index) >= len(self.records):
            return None
        record = self.records[int(index)]
        snapshot: Any = record.request if side == "request" else record.response
        if snapshot is None:
            return None
        if source == "body":
            data = snapshot.body
        elif source == "headers":
            data = snapshot.headers
        else:
            data = getattr(snapshot, "query", None)
        return lookup(data, path)

    def resolve_string(self, value: str) -> Any:
        # A lone reference keeps the type of the referenced value
        found: Any = None
        whole = VARIABLE_PATTERN.fullmatch(value)
        if whole:
            found = lookup(self.variables, whole.group(1))
        else:
            whole = RECORD_PATTERN.fullmatch(value)
            if whole:
                found = self._record_value(whole)
        if found is not None and not isinstance(found, str):
            return found

        def _var(match: re.Match[str]) -> str:
            hit = lookup(self.variables, match.group(1))
            return match.group(0) if hit is None else str(hit)

        def _rec(match: re.Match[str]) -> str:
            hit = self._record_value(match)
            return match.group(0) if hit is None else str(hit)

        if found is not None:
            resolved = found
        else:
            resolved = RECORD_PATTERN.sub(_rec, VARIABLE_PATTERN.sub(_var, value))
        if resolved != value and resolved[:1] in ("{", "["):
            try:
                return json.loads(resolved)
            except ValueError:
                pass
        return resolved

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.resolve_string(value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value


def _expand_random(value: Any) -> Any:
    if isinstance(value, str):

        def _token(match: re.Match[str]) -> str:
            kind = match.group(1)
            if kind == "uuid":
                return str(uuid.uuid4())
            if kind == "timestamp":
                return str(int(time.time()))
            return str(random.randint(0, 1000))

        return RANDOM_TOKEN_PATTERN.sub(_token, value)
    if isinstance(value, dict):
        return {k: _expand_random(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_random(v) for v in value]
    return value


@dataclass(frozen=True)
class PreparedRequest:
    """A fully resolved request descriptor.

    Random tokens (``{{$uuid}}``, ``{{$timestamp}}``, ``{{$randomInt}}``)
    are left in place; ``materialize()`` expands them for each send.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    body_type: BodyType = BodyType.JSON

    def materialize(self) -> PreparedRequest:
        return replace(
            self,
            url=_expand_random(self.url),
            headers=_expand_random(self.headers),
            query=_expand_random(self.query),
            body=_expand_random(self.body),
        )

    def snapshot(self) -> RequestSnapshot:
        return RequestSnapshot(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            query=dict(self.query),
            body=self.body,
        )


def merge_headers(*layers: dict[str, Any] | None) -> dict[str, str]:
    """Merge header dicts case-insensitively; later layers win."""
    merged: dict[str, tuple[str, str]] = {}
    for layer in layers:
        for name, value in (layer or {}).items():
            if value is None:
                continue
            merged[name.lower()] = (name, value if isinstance(value, str) else str(value))
    return dict(merged.values())


class RequestBuilder:
    """Pure request compiler. Holds no state besides the fallback base URL."""

    def __init__(self, default_base_url: str = "http://localhost:3000") -> None:
        self._default_base_url = default_base_url

    def resolve_base_url(self, task_base_url: str = "", environment: Environment | None = None) -> str:
        for candidate in (task_base_url, environment.base_url if environment else ""):
            if candidate and candidate.strip():
                return normalize_base_url(candidate)
        return normalize_base_url(self._default_base_url)

    def build(
        self,
        interface: Interface,
        case: TestCase,
        *,
        environment: Environment | None = None,
        task_base_url: str = "",
        common_headers: dict[str, Any] | None = None,
        default_headers: dict[str, str] | None = None,
        project_id: str | None = None,
        variables: dict[str, Any] | None = None,
        records: list[CaseOutcome] | None = None,
    ) -> PreparedRequest:
        env_vars = dict(environment.variables) if environment else {}
        resolver = VariableResolver({**env_vars, **(variables or {})}, records)
        method = (interface.method or "GET").upper()

        path = self._resolve_path(interface, case, resolver, project_id or interface.project_id)
        url = self.resolve_base_url(task_base_url, environment) + path

        query: dict[str, Any] = {
            q.name: q.example for q in interface.req_query if q.example is not None
        }
        query.update(case.query_params)
        query = {k: v for k, v in resolver.resolve(query).items() if v is not None}

        headers = merge_headers(
            default_headers,
            resolver.resolve(environment.headers) if environment else None,
            resolver.resolve(common_headers or {}),
            resolver.resolve(case.custom_headers),
        )
        headers = self._apply_auth(headers, resolver.variables)

        body = None
        if method in BODY_METHODS:
            raw_body = case.custom_data if not is_empty(case.custom_data) else interface.req_body
            body = resolver.resolve(raw_body)
            if body is not None and not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = DEFAULT_CONTENT_TYPES[interface.req_body_type]

        return PreparedRequest(
            method=method,
            url=url,
            headers=headers,
            query=query,
            body=body,
            body_type=interface.req_body_type,
        )

    def _resolve_path(
        self,
        interface: Interface,
        case: TestCase,
        resolver: VariableResolver,
        project_id: str,
    ) -> str:
        path = str(resolver.resolve_string((interface.path or "").strip()))
        if path and not path.startswith("/"):
            path = f"/{path}"
        overrides = resolver.resolve(case.path_params)

        def _value_for(name: str) -> Any:
            value = overrides.get(name)
            if not is_empty(value):
                return value
            for key in (name, name.lower(), name.upper(), f"{name}Id", f"{name}_id"):
                value = resolver.variables.get(key)
                if not is_empty(value):
                    return value
            if name.lower() in ("projectid", "project_id") and project_id:
                return project_id
            return None

        missing: list[str] = []

        def _substitute(match: re.Match[str]) -> str:
            name = match.group(1) or match.group(2)
            value = _value_for(name)
            if value is None:
                missing.append(name)
                return match.group(0)
            return quote(str(value), safe="")

        path = PATH_TOKEN_PATTERN.sub(_substitute, path)
        if missing:
            logger.warning("path_params_unresolved", interface_id=interface.id, params=missing)
            raise ConfigError(
                f"Unresolved path parameter(s) {', '.join(missing)} for {interface.display_name}"
            )
        return path

    @staticmethod
    def _apply_auth(headers: dict[str, str], variables: dict[str, Any]) -> dict[str, str]:
        for key in [k for k in headers if k.lower() == "authorization"]:
            if is_placeholder_auth(headers[key]):
                del headers[key]
        if any(k.lower() == "authorization" for k in headers):
            return headers
        token = next((variables[k] for k in TOKEN_VARIABLES if not is_empty(variables.get(k))), None)
        if token is not None:
            token = str(token)
            headers["Authorization"] = token if token.startswith("Bearer ") else f"Bearer {token}"
        return headers
