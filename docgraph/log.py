"""Structured logging setup."""
import logging
import sys

import structlog

from docgraph import config


def configure_logging(level: str = None, json_output: bool = None) -> None:
    """Configure structlog on top of the stdlib logging module.

    Args:
        level: Log level name (default from config)
        json_output: Render JSON lines instead of console output (default from config)
    """
    level = (level or config.LOG_LEVEL).upper()
    if json_output is None:
        json_output = config.LOG_JSON

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
