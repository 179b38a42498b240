"""Datadog metrics and tracing integration.

Call :func:`init` once at process start, then :func:`init_tracing` where the
web or worker process is configured. Metrics and spans are only sent when
running in production or staging, or when ``DD_AGENT_URI`` points at an agent.
"""

import functools
from collections.abc import Callable, Mapping
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from opentelemetry import trace

from .config import (
    Config,
    DatadogSettings,
    LoggingConfig,
    configure_config,
    get_config,
)
from .exceptions import (
    ConfigurationError,
    DatadogError,
    InvalidArgumentError,
    MissingCredentialError,
)
from .historical import HistoricalMetricSubmitter, MetricKind
from .instrumentation import TracingManager, get_tracing_manager, init_tracing
from .logging import configure_structured_logging
from .paths import path_group
from .pipeline import (
    PipelineSpan,
    PipelineSpanExporter,
    SpanFilter,
    SpanPipeline,
    SpanRewrite,
    default_pipeline,
)
from .runtime import RuntimeMetricsCollector
from .statsd import MetricEmitter, configure_emitter, get_emitter
from .tags import default_tags, format_tags
from .tracing import (
    RootSpanTracker,
    Tracing,
    configure_tracing,
    flatten_for_span,
    get_tracing,
)


def init(
    service_name: str | None = None,
    version: str | None = None,
    environment: str | None = None,
    repository_url: str | None = None,
    aws_region: str | None = None,
) -> Config:
    """Set identity overrides and reset the default emitter and span helper."""
    config = Config(
        service_name=service_name,
        version=version,
        environment=environment,
        repository_url=repository_url,
        aws_region=aws_region,
    )
    configure_config(config)
    configure_emitter(MetricEmitter(config))
    configure_tracing(Tracing(config))
    return config


def with_timing(
    name: str, tags: Mapping[str, Any] | None = None
) -> AbstractContextManager[None]:
    return get_emitter().with_timing(name, tags)


def count(
    name: str,
    amount: float = 1,
    tags: Mapping[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> None:
    get_emitter().count(name, amount, tags=tags, timestamp=timestamp)


def gauge(
    name: str,
    value: float,
    tags: Mapping[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> None:
    get_emitter().gauge(name, value, tags=tags, timestamp=timestamp)


def distribution(name: str, value: float, tags: Mapping[str, Any] | None = None) -> None:
    get_emitter().distribution(name, value, tags=tags)


def set_metric(name: str, item: Any, tags: Mapping[str, Any] | None = None) -> None:
    get_emitter().set(name, item, tags=tags)


def span(
    name: str, tags: Mapping[str, Any] | None = None, **options: Any
) -> AbstractContextManager[trace.Span]:
    return get_tracing().span(name, tags=tags, **options)


def span_tags(**tags: Any) -> None:
    get_tracing().span_tags(**tags)


def root_span_tags(**tags: Any) -> None:
    get_tracing().root_span_tags(**tags)


def error(err: Any) -> None:
    get_tracing().error(err)


def traced_task(name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Trace runs of a background task registered with :func:`init_tracing`.

    The span helper is looked up per call, so tasks decorated at import time
    follow a later :func:`init`.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return get_tracing().traced_task(name)(func)(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "Config",
    "DatadogSettings",
    "LoggingConfig",
    "get_config",
    "configure_config",
    "ConfigurationError",
    "DatadogError",
    "InvalidArgumentError",
    "MissingCredentialError",
    "HistoricalMetricSubmitter",
    "MetricKind",
    "TracingManager",
    "init_tracing",
    "get_tracing_manager",
    "configure_structured_logging",
    "path_group",
    "PipelineSpan",
    "PipelineSpanExporter",
    "SpanFilter",
    "SpanRewrite",
    "SpanPipeline",
    "default_pipeline",
    "MetricEmitter",
    "RuntimeMetricsCollector",
    "get_emitter",
    "configure_emitter",
    "default_tags",
    "format_tags",
    "RootSpanTracker",
    "Tracing",
    "get_tracing",
    "configure_tracing",
    "flatten_for_span",
    "init",
    "with_timing",
    "count",
    "gauge",
    "distribution",
    "set_metric",
    "span",
    "span_tags",
    "root_span_tags",
    "error",
    "traced_task",
]
