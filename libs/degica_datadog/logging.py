"""Structured logging correlated with Datadog traces."""

import contextvars
import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from .config import LoggingConfig, get_config

# Module-level ContextVar for correlation IDs
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

_DATADOG_TRACE_ID_MASK = (1 << 64) - 1


def configure_structured_logging(config: LoggingConfig) -> None:
    """Configure structlog with Datadog trace correlation."""
    level = getattr(logging, config.level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if config.enable_trace_context:
        processors.append(add_trace_context)
        processors.append(add_service_context)

    if config.enable_correlation:
        processors.append(add_correlation_context)

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_trace_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add the active trace and span IDs in the format Datadog joins logs on."""
    span = trace.get_current_span()

    if span and span.is_recording():
        span_context = span.get_span_context()

        # Datadog correlates on the decimal lower 64 bits of the trace ID.
        event_dict["dd.trace_id"] = str(span_context.trace_id & _DATADOG_TRACE_ID_MASK)
        event_dict["dd.span_id"] = str(span_context.span_id)

    return event_dict


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    config = get_config()
    event_dict.setdefault("dd.service", config.service)
    event_dict.setdefault("dd.env", config.environment)
    event_dict.setdefault("dd.version", config.version)
    return event_dict


def add_correlation_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add correlation context to log entries."""
    if "correlation_id" not in event_dict:
        correlation_id = correlation_id_var.get()
        if correlation_id:
            event_dict["correlation_id"] = correlation_id

    return event_dict


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id_var.get()
