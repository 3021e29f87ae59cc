"""structlog configuration shared by the API process and Celery workers."""

from __future__ import annotations

import logging
import sys

import structlog

from deid_export.config import settings

_configured = False


def configure_logging(level: str | None = None, json: bool | None = None) -> None:
    """Configure structlog once per process.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL.
        json: Render JSON lines instead of the console format.
    """
    global _configured
    if _configured:
        return

    level_name = (level or settings.LOG_LEVEL).upper()
    use_json = settings.LOG_JSON if json is None else json

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level_name)

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        cache_logger_on_first_use=True,
    )
    _configured = True
