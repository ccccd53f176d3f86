"""Structured logging utilities for keyrelay.

Every record is emitted through structlog. Records produced while a request is
in flight carry that request's id so client reports can be matched to operator
logs.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add request_id to log context if available."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add epoch timestamp to log entries."""
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format. If False, use console format.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        # main.py reconfigures after the config file is read; loggers must not
        # keep the import-time configuration.
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = "keyrelay") -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Set request ID in context for all subsequent logs.

    Args:
        request_id: Unique identifier for the request
    """
    request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear request ID from context."""
    request_id_var.set(None)


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Render a credential for log output without making it recoverable.

    Only the first ``visible`` characters survive, and only when the value is
    long enough that the prefix is a small fraction of it. Shorter values are
    rendered as ``***``.

    Example::

        mask_secret("AIzaSyD-example-key")   # "AIza..."
        mask_secret("abc")                   # "***"
    """
    if not value:
        return "<empty>"
    if len(value) <= visible * 2:
        return "***"
    return f"{value[:visible]}..."


# Initialize logging with sensible defaults
# This will be reconfigured by main.py based on environment
configure_logging()
