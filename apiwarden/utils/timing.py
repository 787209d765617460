"""Wall-clock measurement helpers."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator


def elapsed_ms(start: float) -> int:
    """Milliseconds since ``start`` (a ``time.monotonic()`` reading)."""
    return int((time.monotonic() - start) * 1000)


@contextmanager
def timed() -> Generator[dict[str, int], None, None]:
    """Measure the elapsed time of a block in milliseconds.

    Usage::

        with timed() as t:
            await send()
        t["ms"]
    """
    result: dict[str, int] = {"ms": 0}
    start = time.monotonic()
    try:
        yield result
    finally:
        result["ms"] = elapsed_ms(start)
