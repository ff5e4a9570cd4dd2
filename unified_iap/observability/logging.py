"""
Structured Logging with Structlog.

Provides JSON-formatted logs with purchase and notification context.
Applications embedding the library may call setup_logging() once at startup,
or keep their own structlog configuration.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from unified_iap.config import Settings, get_settings


def _app_context(service_name: str) -> Processor:
    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        """Add service-level context to all log entries."""
        event_dict["service"] = service_name
        return event_dict

    return add_app_context


def setup_logging(config: Settings | None = None) -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "apple_notification_parsed",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "unified_iap.services.apple_notifications",
        "service": "unified-iap",
        "notification_id": "6b7c...",
        ...additional context
    }
    """
    config = config or get_settings()
    level = config.log_level.upper()

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    # Processors for structlog
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _app_context(config.service_name),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    # Add exception info
    if level == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    # Choose renderer based on format
    if config.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("google_subscription_retrieved", state="SUBSCRIPTION_STATE_ACTIVE")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def redact_token(token: str, visible: int = 12) -> str:
    """Truncate a purchase token for logging."""
    if len(token) <= visible:
        return token
    return f"{token[:visible]}..."


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(vendor="apple", notification_id="abc"):
            logger.info("notification_received")
            # All logs within this context will include vendor and notification_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
