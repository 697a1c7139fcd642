"""Structured logging configuration with structlog.

Production emits one JSON object per line; development renders colored
console output. The level comes from the LOG_LEVEL environment variable.

Usage:
    from blockfighters.observability.logging import configure_structlog, get_logger

    configure_structlog(environment="development")
    log = get_logger("vote_coordinator")
    log.info("vote_recorded", identity_id="u1", match_id=1)
"""

import logging
import os

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV = "LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"


def _get_log_level() -> int:
    level_name = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def configure_structlog(environment: str = "production") -> None:
    """Configure structlog once at application startup.

    Args:
        environment: 'production' for JSON output, anything else for console.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(_get_log_level()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, service: str = "blockfighters"):
    """Get a logger with service and component already bound.

    The logger resolves its configuration lazily on first use, so module-level
    loggers pick up configure_structlog() even when created before it runs.
    """
    return structlog.get_logger(service=service, component=component)
