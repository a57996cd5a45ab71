"""Structured logging initialisation utilities."""
from __future__ import annotations

import logging
import sys
from typing import Any, List

import structlog

from .models import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure stdlib and structlog logging from the logging config section."""
    config = config or LoggingConfig()
    level = getattr(logging, config.level)
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s", force=True)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if config.json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
