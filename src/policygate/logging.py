"""
Structured logging for PolicyGate.

structlog is bridged onto the standard logging module so that library
users who only configure stdlib logging still see PolicyGate output.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, json: bool = False) -> None:
    """Configure structlog/standard logging bridge."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    renderer: Any
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)


def get_logger(name: str | None = None, **initial: Any) -> structlog.stdlib.BoundLogger:
    """Return a logger, optionally bound with contextual fields."""
    logger = structlog.get_logger(name)
    if initial:
        logger = logger.bind(**initial)
    return logger
