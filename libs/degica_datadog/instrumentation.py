"""Process-wide tracing setup and runtime metrics."""

import os
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from .config import Config, get_config
from .pipeline import PipelineSpanExporter, SpanPipeline, default_pipeline
from .runtime import RuntimeMetricsCollector
from .statsd import MetricEmitter
from .tracing import RootSpanTracker, get_root_span_tracker, register_tasks

logger = structlog.get_logger(__name__)


def requests_span_hook(span: trace.Span, request: Any) -> None:
    """Tag outbound ``requests`` spans the way the span pipeline expects."""
    if span is None or not span.is_recording():
        return

    parts = urlsplit(request.url)
    span.set_attribute("component", "requests")
    span.set_attribute("http.method", request.method)
    span.set_attribute("http.url", parts.path or "/")
    if parts.hostname:
        span.set_attribute("peer.hostname", parts.hostname)


class TracingManager:
    """Owns the tracer provider for the lifetime of the process."""

    def __init__(
        self,
        config: Config | None = None,
        exporter: SpanExporter | None = None,
        pipeline: SpanPipeline | None = None,
        root_tracker: RootSpanTracker | None = None,
        set_global: bool = True,
        runtime_metrics: bool = True,
        emitter: MetricEmitter | None = None,
    ):
        self.config = config or get_config()
        self.exporter = exporter
        self.pipeline = pipeline or default_pipeline()
        self.root_tracker = root_tracker or get_root_span_tracker()
        self.set_global = set_global
        self.runtime_metrics = runtime_metrics
        self.emitter = emitter
        self.runtime_metrics_collector: RuntimeMetricsCollector | None = None
        self.tracer_provider: TracerProvider | None = None
        self.tasks: frozenset[str] = frozenset()
        self._initialized = False

    def initialize(self, tasks: Iterable[str] | None = None) -> None:
        """Initialize tracing. Safe to call more than once."""
        if self._initialized:
            logger.warning("Datadog tracing already initialized")
            return

        if not self.config.enabled:
            logger.info("Datadog tracing disabled by configuration")
            return

        try:
            logger.info("Initializing Datadog tracing", **self.config.describe())

            self._set_source_code_env()
            self._setup_tracer_provider()
            self._setup_auto_instrumentation()
            self._setup_runtime_metrics()

            self.tasks = frozenset(tasks or ())
            self._initialized = True
            logger.info("Datadog tracing initialized", tasks=sorted(self.tasks))

        except Exception as e:
            logger.error("Failed to initialize Datadog tracing", error=str(e))
            raise

    def _set_source_code_env(self) -> None:
        # Set as env vars instead of tags because parts of the Datadog
        # tooling read these directly and don't know about our tags.
        os.environ.setdefault("DD_GIT_COMMIT_SHA", self.config.version)
        os.environ.setdefault("DD_GIT_REPOSITORY_URL", self.config.repository_url)

    def resource_attributes(self) -> dict[str, str]:
        attributes = {
            "service.name": self.config.service,
            "service.version": self.config.version,
            "deployment.environment": self.config.environment,
        }
        if self.config.aws_region:
            attributes["aws.region"] = self.config.aws_region
        return attributes

    def _default_exporter(self) -> SpanExporter:
        endpoint = (
            f"http://{self.config.agent_host}:{self.config.tracing_port}/v1/traces"
        )
        return OTLPSpanExporter(endpoint=endpoint)

    def _setup_tracer_provider(self) -> None:
        self.tracer_provider = TracerProvider(
            resource=Resource.create(self.resource_attributes())
        )
        self.tracer_provider.add_span_processor(self.root_tracker)

        exporter = self.exporter or self._default_exporter()
        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(PipelineSpanExporter(exporter, self.pipeline))
        )

        if self.set_global:
            trace.set_tracer_provider(self.tracer_provider)

        logger.debug(
            "Tracer provider configured",
            agent_host=self.config.agent_host,
            tracing_port=self.config.tracing_port,
        )

    def _setup_auto_instrumentation(self) -> None:
        try:
            RequestsInstrumentor().instrument(
                tracer_provider=self.tracer_provider,
                request_hook=requests_span_hook,
            )

            # Propagate trace context into SQL comments.
            SQLAlchemyInstrumentor().instrument(
                tracer_provider=self.tracer_provider,
                enable_commenter=True,
            )

            CeleryInstrumentor().instrument(tracer_provider=self.tracer_provider)

            logger.debug(
                "Auto-instrumentation configured for requests, SQLAlchemy, Celery"
            )

        except Exception as e:
            logger.warning("Some auto-instrumentation failed", error=str(e))

    def _setup_runtime_metrics(self) -> None:
        if not self.runtime_metrics:
            return

        self.runtime_metrics_collector = RuntimeMetricsCollector(self.emitter)
        self.runtime_metrics_collector.start()

    def get_tracer(self, name: str) -> trace.Tracer:
        if not self.tracer_provider:
            return trace.NoOpTracer()
        return self.tracer_provider.get_tracer(name)

    def shutdown(self) -> None:
        """Stop runtime metrics, then flush and shut down the tracer provider."""
        if self.runtime_metrics_collector:
            self.runtime_metrics_collector.stop()

        if self.tracer_provider:
            self.tracer_provider.shutdown()
            logger.info("Datadog tracing shutdown completed")


_tracing_manager: TracingManager | None = None


def init_tracing(
    tasks: Iterable[str] | None = None,
    config: Config | None = None,
    exporter: SpanExporter | None = None,
) -> TracingManager:
    """Initialize Datadog tracing once per process.

    ``tasks`` names the background tasks whose runs should be traced, see
    :meth:`Tracing.traced_task`.
    """
    global _tracing_manager

    if _tracing_manager is None:
        _tracing_manager = TracingManager(config, exporter=exporter)

    _tracing_manager.initialize(tasks)
    register_tasks(_tracing_manager.tasks)

    return _tracing_manager


def get_tracing_manager() -> TracingManager | None:
    return _tracing_manager
