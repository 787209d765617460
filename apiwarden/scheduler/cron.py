"""Cron expression validation and next-fire computation."""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from apiwarden.exceptions import ConfigError


def validate_cron(expression: str) -> str:
    """Return the normalized expression or raise ConfigError."""
    expr = (expression or "").strip()
    if not expr or len(expr.split()) not in (5, 6) or not croniter.is_valid(expr):
        raise ConfigError(f"Invalid cron expression: {expression!r}")
    return expr


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {name!r}") from exc


def next_fire_time(expression: str, timezone: str, now: datetime) -> datetime:
    """Next time strictly after ``now`` that matches ``expression`` in ``timezone``.

    ``now`` may be naive (treated as UTC) or aware; the result is aware UTC.
    """
    expr = validate_cron(expression)
    tz = resolve_timezone(timezone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    local_now = now.astimezone(tz)
    fire = croniter(expr, local_now).get_next(datetime)
    return fire.astimezone(UTC)
