from __future__ import annotations

"""structlog setup shared by all memoryopt components."""

import logging
import sys

import structlog


def configure_logging(level: int | str = logging.INFO, *, json: bool = True) -> None:
    """Route structlog events to stderr as JSON lines with ISO UTC timestamps."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(key="timestamp", fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["configure_logging"]
