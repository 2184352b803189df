"""Structured logging for Mailwatch.

Every module logs through ``get_logger("mailwatch.<module>")`` with
snake_case event names. Controllers bind ``tenant_id`` and
``lifecycle_id`` so each line can be traced back to one subscription.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

from mailwatch.config import get_settings

if TYPE_CHECKING:
    from mailwatch.config import Settings

# Chatty at INFO: one line per HTTP request or pooled connection.
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "asyncpg")


def _renderer(development: bool) -> Any:
    if development:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and route third-party stdlib logging to stdout."""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.is_development:
        processors += [structlog.processors.StackInfoRenderer(), structlog.dev.set_exc_info]
    else:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(settings.is_development))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
