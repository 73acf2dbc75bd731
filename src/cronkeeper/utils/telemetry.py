"""Telemetry sink for store operations and publish runs.

Every call is logged with operation name, duration and outcome. Nothing
here is required for correctness; the logger is the only consumer.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from cronkeeper.utils.logging import get_logger

log = get_logger("cronkeeper.telemetry")


@asynccontextmanager
async def timed_operation(operation: str, **fields: Any) -> AsyncIterator[dict[str, Any]]:
    """Misst eine Operation und loggt ``operation``, ``duration_ms``, ``outcome``.

    Der zurückgegebene Dict kann vom Aufrufer um Felder ergänzt werden.

    Usage:
        async with timed_operation("store.get", job_id=job_id) as span:
            span["hit"] = True
    """
    span: dict[str, Any] = dict(fields)
    start = time.perf_counter()
    try:
        yield span
    except BaseException as exc:
        log.info(
            "operation",
            operation=operation,
            duration_ms=round((time.perf_counter() - start) * 1000, 3),
            outcome="error",
            error=type(exc).__name__,
            **span,
        )
        raise
    log.debug(
        "operation",
        operation=operation,
        duration_ms=round((time.perf_counter() - start) * 1000, 3),
        outcome="ok",
        **span,
    )
