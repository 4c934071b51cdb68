"""Logging infrastructure with structlog for JSON-formatted logs"""

import sys
import logging
from typing import Any
import structlog
from structlog.types import EventDict, Processor

from rwe_governance.config import settings


# Keys that can identify a user; participant IDs are logged instead
IDENTIFYING_KEYS = frozenset({"user_id", "contact_email"})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to log entries"""
    event_dict["environment"] = settings.environment
    event_dict["service"] = "rwe-governance"
    return event_dict


def drop_identifying_keys(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Remove user-identifying keys so log lines carry participant IDs only"""
    for key in IDENTIFYING_KEYS.intersection(event_dict):
        del event_dict[key]
    return event_dict


def setup_logging() -> None:
    """Configure structlog for JSON-formatted logging"""

    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout if settings.logging.output == "stdout" else open(settings.logging.output, "a"),
        level=log_level,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_app_context,
        drop_identifying_keys,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
