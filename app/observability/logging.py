"""
Structured Logging with Structlog.

Provides JSON-formatted logs with request context. Raw tokens, passwords and
password hashes must never be passed as log fields; log user ids, hashed
token prefixes and emails instead.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

# Field names that are scrubbed if they ever reach a log call
_SENSITIVE_KEYS = frozenset(
    {"password", "new_password", "current_password", "password_hash", "token", "refresh_token",
     "access_token", "id_token", "authorization"}
)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential-bearing fields with a placeholder."""
    for key in _SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "[REDACTED]"
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "login_failed",
        "level": "warning",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "app.services.auth",
        "service": "menu-saas-account-core",
        "version": "0.1.0",
        "request_id": "req-123",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
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
        logger.info("account_locked", email=email, locked_until=locked_until.isoformat())
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(request_id="req-123", user_id=42):
            logger.info("processing_request")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
