"""Span helpers for application code."""

import functools
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, TypeVar

import structlog
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor
from opentelemetry.trace import Status, StatusCode

from .config import Config, get_config
from .pipeline import RESOURCE_ATTRIBUTE, SERVICE_ATTRIBUTE, SPAN_TYPE_ATTRIBUTE

F = TypeVar("F", bound=Callable[..., Any])

logger = structlog.get_logger(__name__)

# Default span tags that get attached automatically.
DEFAULT_SPAN_TAGS = {
    "component": "degica_datadog",
    "span.kind": "internal",
    "operation": "custom_span",
}

TASK_SPAN_NAME = "task.run"


def _attribute_value(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


class RootSpanTracker(SpanProcessor):
    """Maps every open span to the local root it descends from.

    A span whose parent is absent or remote is a local root: the trace root
    as far as this service is concerned, even when the trace itself started
    upstream. Several local roots can share one trace (two jobs handling
    messages of the same upstream request), so roots are tracked per span
    rather than per trace.
    """

    def __init__(self) -> None:
        self._roots: dict[int, Span] = {}

    def on_start(
        self, span: Span, parent_context: otel_context.Context | None = None
    ) -> None:
        parent = span.parent
        root = span
        if parent is not None and not parent.is_remote:
            # A local parent that already ended has no entry left.
            root = self._roots.get(parent.span_id, span)
        self._roots[span.context.span_id] = root

    def on_end(self, span: ReadableSpan) -> None:
        self._roots.pop(span.context.span_id, None)

    def root_for(self, span_id: int) -> Span | None:
        """The local root of the open span ``span_id``."""
        return self._roots.get(span_id)

    def shutdown(self) -> None:
        self._roots.clear()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


_root_span_tracker = RootSpanTracker()

_registered_tasks: frozenset[str] = frozenset()


def get_root_span_tracker() -> RootSpanTracker:
    return _root_span_tracker


def register_tasks(tasks: Iterable[str]) -> None:
    """Set the background tasks traced by :meth:`Tracing.traced_task`."""
    global _registered_tasks
    _registered_tasks = frozenset(tasks)


def get_registered_tasks() -> frozenset[str]:
    return _registered_tasks


def flatten_for_span(
    mapping: Mapping[str, Any], key: str | None = None
) -> dict[str, Any]:
    """Flatten nested data into dot separated tag names.

    ``{"outer": {"inner": 1}}`` becomes ``{"outer.inner": 1}``.
    """
    flattened: dict[str, Any] = {}
    for k, v in mapping.items():
        flattened_key = ".".join(str(part) for part in (key, k) if part is not None)

        if isinstance(v, Mapping):
            flattened.update(flatten_for_span(v, flattened_key))
        else:
            flattened[flattened_key] = v

    return flattened


class Tracing:
    """Creates and tags spans on behalf of application code."""

    def __init__(
        self,
        config: Config,
        tracer: trace.Tracer | None = None,
        root_tracker: RootSpanTracker | None = None,
        tasks: Iterable[str] | None = None,
    ):
        self.config = config
        self._tracer = tracer
        self.root_tracker = root_tracker or get_root_span_tracker()
        self._tasks = frozenset(tasks) if tasks is not None else None

    @property
    def tracer(self) -> trace.Tracer:
        return self._tracer or trace.get_tracer(__name__)

    @property
    def tasks(self) -> frozenset[str]:
        """Traced task names, by default those registered at tracing init."""
        if self._tasks is not None:
            return self._tasks
        return get_registered_tasks()

    def enrich_span_options(self, options: Mapping[str, Any]) -> dict[str, Any]:
        """Merge in default tags and the service name."""
        enriched = dict(options)
        enriched["service"] = self.config.service

        user_tags = enriched.get("tags")
        if user_tags:
            enriched["tags"] = {**DEFAULT_SPAN_TAGS, **user_tags}
        else:
            enriched["tags"] = dict(DEFAULT_SPAN_TAGS)

        return enriched

    @contextmanager
    def span(
        self,
        name: str,
        tags: Mapping[str, Any] | None = None,
        kind: trace.SpanKind = trace.SpanKind.INTERNAL,
        resource: str | None = None,
        span_type: str | None = None,
        service: str | None = None,
        context: otel_context.Context | None = None,
        links: Sequence[trace.Link] | None = None,
        start_time: int | None = None,
        record_exception: bool = True,
        set_status_on_exception: bool = True,
    ) -> Iterator[trace.Span]:
        """Start a new span as the current span.

        ``resource`` and ``span_type`` become the Datadog resource and span
        type. ``service`` is accepted for call-site compatibility but always
        replaced by the configured service. The remaining options are handed
        to the OpenTelemetry tracer unchanged.
        """
        options = self.enrich_span_options(
            {
                "service": service,
                "tags": tags,
                "resource": resource,
                "span_type": span_type,
            }
        )
        attributes = {
            SERVICE_ATTRIBUTE: options["service"],
            **{k: _attribute_value(v) for k, v in options["tags"].items()},
        }
        if options["resource"] is not None:
            attributes[RESOURCE_ATTRIBUTE] = str(options["resource"])
        if options["span_type"] is not None:
            attributes[SPAN_TYPE_ATTRIBUTE] = str(options["span_type"])

        with self.tracer.start_as_current_span(
            name,
            context=context,
            kind=kind,
            attributes=attributes,
            links=links,
            start_time=start_time,
            record_exception=record_exception,
            set_status_on_exception=set_status_on_exception,
        ) as span:
            yield span

    def current_span(self) -> trace.Span | None:
        """The active span, or None when disabled or outside any span."""
        if not self.config.enabled:
            return None

        span = trace.get_current_span()
        if not span.get_span_context().is_valid:
            return None
        return span

    def root_span(self) -> trace.Span | None:
        """The current root span.

        Root here means within this service, not necessarily the actual trace
        root span if that is from a different service.
        """
        span_context = trace.get_current_span().get_span_context()
        if not span_context.is_valid:
            return None
        return self.root_tracker.root_for(span_context.span_id)

    def span_tags(self, **tags: Any) -> None:
        """Set tags on the current span."""
        if not self.config.enabled:
            return

        span = self.current_span()
        if span is None:
            return

        for key, value in tags.items():
            span.set_attribute(str(key), _attribute_value(value))

    def root_span_tags(self, **tags: Any) -> None:
        """Set tags on the current root span.

        Unlike :meth:`span_tags` this ignores the enabled check. Kept as is
        until the callers relying on it move to statsd metrics.
        """
        span = self.root_span()
        if span is None:
            return

        for key, value in tags.items():
            span.set_attribute(str(key), _attribute_value(value))

    def error(self, err: Any) -> None:
        """Attach an exception to the current and root spans and mark them as errored."""
        if not (self.config.enabled and isinstance(err, BaseException)):
            return

        current = self.current_span()
        root = self.root_span()

        targets = [current] if current is not None else []
        if root is not None and not (current is not None and _same_span(current, root)):
            targets.append(root)

        for span in targets:
            span.record_exception(err)
            span.set_status(Status(StatusCode.ERROR, str(err)))

    def traced_task(self, name: str) -> Callable[[F], F]:
        """Trace a background task if it was registered at tracing init."""

        def decorator(func: F) -> F:
            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                if name not in self.tasks:
                    return func(*args, **kwargs)

                with self.span(
                    TASK_SPAN_NAME, tags={"component": "task"}, resource=name
                ):
                    return func(*args, **kwargs)

            return wrapper  # type: ignore

        return decorator


def _same_span(a: trace.Span, b: trace.Span) -> bool:
    return a.get_span_context().span_id == b.get_span_context().span_id


_tracing: Tracing | None = None


def get_tracing() -> Tracing:
    """Get the process-wide span helper."""
    global _tracing

    if _tracing is None:
        _tracing = Tracing(get_config())

    return _tracing


def configure_tracing(tracing: Tracing | None) -> None:
    global _tracing
    _tracing = tracing
