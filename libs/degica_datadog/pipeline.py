"""Span filtering and rewriting before traces leave the process.

Every finished span goes through an ordered list of stages. A
:class:`SpanFilter` decides whether the span is dropped; a
:class:`SpanRewrite` mutates it in place. The first filter that drops a span
stops the pipeline for that span.

Stages run on the exporter's flush thread, not on the request thread that
created the span. They must only touch the span they are given.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import structlog
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from .paths import path_group

logger = structlog.get_logger(__name__)

# Name of the span opened for each inbound HTTP request.
INBOUND_REQUEST_SPAN_NAME = "http.request"

# Datadog reads resource, service and span type overrides from these span
# attributes.
RESOURCE_ATTRIBUTE = "resource.name"
SERVICE_ATTRIBUTE = "service.name"
SPAN_TYPE_ATTRIBUTE = "span.type"

HEALTH_CHECK_PREFIX = "/health_check"
STATIC_ASSET_PREFIXES = ("/assets", "/packs")
NOISY_PEER_HOSTNAMES = frozenset({"collector.newrelic.com"})
GROUPED_HOSTNAME_SUFFIXES = ("myshopify.com", "ngrok.io", "ngrok-free.app")
HTTP_CLIENT_COMPONENTS = frozenset(
    {
        "ethon",
        "faraday",
        "net/http",
        "httpclient",
        "httprb",
        "requests",
        "urllib3",
        "httpx",
        "aiohttp",
    }
)
INSTANCE_METADATA_PATHS = frozenset(
    {"/metadata/instance/compute", "/latest/api/token"}
)


class PipelineSpan:
    """Mutable view of a finished span."""

    def __init__(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        service: str | None = None,
    ):
        self.name = name
        self.tags: dict[str, Any] = dict(attributes or {})
        self._service = service
        self.modified = False

    @classmethod
    def from_readable(cls, span: ReadableSpan) -> "PipelineSpan":
        service = None
        if span.resource is not None:
            service = span.resource.attributes.get(SERVICE_ATTRIBUTE)
        return cls(span.name, span.attributes, service=service)

    @property
    def resource(self) -> str:
        return self.tags.get(RESOURCE_ATTRIBUTE, self.name)

    @resource.setter
    def resource(self, value: str) -> None:
        self.set_tag(RESOURCE_ATTRIBUTE, value)

    @property
    def service(self) -> str | None:
        return self.tags.get(SERVICE_ATTRIBUTE, self._service)

    def get_tag(self, key: str) -> Any:
        return self.tags.get(key)

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value
        self.modified = True

    def to_readable(self, original: ReadableSpan) -> ReadableSpan:
        """Rebuild ``original`` with this view's tags."""
        if not self.modified:
            return original

        return ReadableSpan(
            name=self.name,
            context=original.context,
            parent=original.parent,
            resource=original.resource,
            attributes=self.tags,
            events=original.events,
            links=original.links,
            kind=original.kind,
            status=original.status,
            start_time=original.start_time,
            end_time=original.end_time,
            instrumentation_scope=original.instrumentation_scope,
        )


def _url(span: PipelineSpan) -> str:
    url = span.get_tag("http.url")
    return url if isinstance(url, str) else ""


def _peer_hostname(span: PipelineSpan) -> str:
    hostname = span.get_tag("peer.hostname")
    return hostname if isinstance(hostname, str) else ""


class PipelineStage(ABC):
    """A single step of the span pipeline."""

    @abstractmethod
    def apply(self, span: PipelineSpan) -> bool:
        """Run the stage. Returns False when the span must be dropped."""


class SpanFilter(PipelineStage):
    @abstractmethod
    def drop(self, span: PipelineSpan) -> bool:
        """Return True to remove the span from export."""

    def apply(self, span: PipelineSpan) -> bool:
        return not self.drop(span)


class SpanRewrite(PipelineStage):
    @abstractmethod
    def rewrite(self, span: PipelineSpan) -> None:
        """Mutate the span in place."""

    def apply(self, span: PipelineSpan) -> bool:
        self.rewrite(span)
        return True


class HealthCheckFilter(SpanFilter):
    """Drop load balancer health checks."""

    def drop(self, span: PipelineSpan) -> bool:
        return span.name == INBOUND_REQUEST_SPAN_NAME and _url(span).startswith(
            HEALTH_CHECK_PREFIX
        )


class StaticAssetFilter(SpanFilter):
    """Drop requests for compiled static assets."""

    def drop(self, span: PipelineSpan) -> bool:
        return span.name == INBOUND_REQUEST_SPAN_NAME and _url(span).startswith(
            STATIC_ASSET_PREFIXES
        )


class ThirdPartyNoiseFilter(SpanFilter):
    """Drop calls made by other monitoring agents (the NewRelic reporter)."""

    def drop(self, span: PipelineSpan) -> bool:
        return _peer_hostname(span) in NOISY_PEER_HOSTNAMES


class HostnameGroupingRewrite(SpanRewrite):
    """Group per-tenant subdomains under their shared domain."""

    def rewrite(self, span: PipelineSpan) -> None:
        hostname = _peer_hostname(span)
        for suffix in GROUPED_HOSTNAME_SUFFIXES:
            if hostname.endswith(suffix):
                span.set_tag("peer.hostname", suffix)
                return


class OutboundResourceRewrite(SpanRewrite):
    """Use method and path group as the resource of outbound HTTP calls.

    The raw path would create a resource per ID embedded in it.
    """

    def rewrite(self, span: PipelineSpan) -> None:
        if span.get_tag("component") not in HTTP_CLIENT_COMPONENTS:
            return

        method = span.get_tag("http.method") or ""
        path = path_group(span.get_tag("http.url"))
        span.resource = f"{method} {path}".strip()


class InstanceMetadataFilter(SpanFilter):
    """Drop cloud instance metadata fetches made by SDKs."""

    def drop(self, span: PipelineSpan) -> bool:
        return _url(span) in INSTANCE_METADATA_PATHS


def default_stages() -> list[PipelineStage]:
    return [
        HealthCheckFilter(),
        StaticAssetFilter(),
        ThirdPartyNoiseFilter(),
        HostnameGroupingRewrite(),
        OutboundResourceRewrite(),
        InstanceMetadataFilter(),
    ]


class SpanPipeline:
    """Ordered sequence of stages applied to each span."""

    def __init__(self, stages: Iterable[PipelineStage]):
        self.stages = tuple(stages)

    def process(self, span: PipelineSpan) -> bool:
        """Run all stages on ``span``. Returns False if it was dropped."""
        for stage in self.stages:
            if not stage.apply(span):
                return False
        return True


def default_pipeline() -> SpanPipeline:
    return SpanPipeline(default_stages())


class PipelineSpanExporter(SpanExporter):
    """Exporter wrapper running the span pipeline before delegating."""

    def __init__(self, exporter: SpanExporter, pipeline: SpanPipeline | None = None):
        self.exporter = exporter
        self.pipeline = pipeline or default_pipeline()

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = []
        for span in spans:
            view = PipelineSpan.from_readable(span)
            if self.pipeline.process(view):
                kept.append(view.to_readable(span))

        dropped = len(spans) - len(kept)
        if dropped:
            logger.debug("Dropped spans before export", dropped=dropped, kept=len(kept))

        if not kept:
            return SpanExportResult.SUCCESS

        return self.exporter.export(kept)

    def shutdown(self) -> None:
        self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.exporter.force_flush(timeout_millis)
