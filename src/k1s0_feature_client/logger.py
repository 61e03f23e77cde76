"""structlog based logger setup."""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """Configure structlog for the client and return a bound logger.

    Args:
        level: log level ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: output format ("json" or "text")

    Returns:
        a configured structlog.stdlib.BoundLogger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer: structlog.types.Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.get_logger("k1s0_feature_client")
