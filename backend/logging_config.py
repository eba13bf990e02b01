"""
Structured logging configuration using structlog wrapping stdlib.

Human-readable console output by default, JSON lines when
HABIT_LOG_FORMAT=json.

Usage:
    from logging_config import setup_logging, get_logger
    setup_logging()
    logger = get_logger(__name__)
"""

import logging
import sys
from typing import List, Optional

import structlog

from config import LOG_FORMAT, LOG_LEVEL


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    if level is None:
        level = LOG_LEVEL

    if json_output is None:
        json_output = LOG_FORMAT.lower() == "json"

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
