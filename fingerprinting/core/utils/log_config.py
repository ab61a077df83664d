"""
Structured logging setup.

Configures structlog on top of the standard library logging module so
that both ``structlog.get_logger`` and plain ``logging`` loggers share
the same level and output.
"""

import logging
import sys

import structlog

from fingerprinting.core.models.config import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    """Configure structlog and the root logger from the logging section."""
    log_level = getattr(logging, config.level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    logging.getLogger().setLevel(log_level)

    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).debug(
        "Logging configured",
        level=config.level,
        format=config.format,
        service=config.service_name,
        environment=config.environment,
    )
