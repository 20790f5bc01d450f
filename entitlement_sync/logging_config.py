"""Structured logging configuration using structlog.

Every component logs snake_case events through a logger obtained from
``get_logger(__name__)``. Reconciliation context (product_id, source,
user_email) is bound with ``bind_context`` so that all logs emitted while a
transaction flows through the pipeline carry it.
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "entitlement-sync"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every event with the library name."""
    event_dict["app"] = APP_NAME
    return event_dict


def mask_user_email(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep only the first character of the local part of user emails."""
    email = event_dict.get("user_email")
    if isinstance(email, str) and "@" in email:
        local, _, domain = email.partition("@")
        event_dict["user_email"] = f"{local[:1]}***@{domain}"
    return event_dict


def drop_debug_events(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop DEBUG events unless LOG_LEVEL=DEBUG."""
    if method_name == "debug" and os.getenv("LOG_LEVEL", "INFO").upper() != "DEBUG":
        raise structlog.DropEvent
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_format: Optional[bool] = None,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog for the host process.

    Args:
        log_level: Logging level name; defaults to the LOG_LEVEL env var or INFO
        json_format: JSON output if True, colored console output if False;
            defaults to the LOG_FORMAT env var ("json" or "console")
        include_timestamp: Include ISO8601 timestamps in logs
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        mask_user_email,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))

    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_events)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a logger bound to the given module name."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables included in all subsequent logs of this thread.

    Example:
        bind_context(product_id="com.humuli.pods.plus.month", source="listener")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()
