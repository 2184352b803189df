"""Shared utilities for Mailwatch."""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Log ``name`` with its duration when the block exits.

    The yielded dict is merged into the log event, so the block can attach
    counts or outcomes it only learns while running. A block that raises is
    logged at warning level with ``failed=True`` and the error re-raised.
    """
    start = time.perf_counter()
    fields: dict[str, Any] = {}
    try:
        yield fields
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        fields.update(failed=True, error=str(exc))
        log.warning(name, **{**extra, **fields, "duration_ms": duration_ms})
        raise
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    log.info(name, **{**extra, **fields, "duration_ms": duration_ms})
