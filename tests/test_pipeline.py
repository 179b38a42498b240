"""Tests for the span pipeline and path grouping."""

import pytest
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor

from libs.degica_datadog.paths import path_group
from libs.degica_datadog.pipeline import (
    INBOUND_REQUEST_SPAN_NAME,
    HealthCheckFilter,
    HostnameGroupingRewrite,
    InstanceMetadataFilter,
    OutboundResourceRewrite,
    PipelineSpan,
    PipelineSpanExporter,
    SpanFilter,
    SpanPipeline,
    SpanRewrite,
    StaticAssetFilter,
    ThirdPartyNoiseFilter,
    default_pipeline,
    default_stages,
)


def inbound(url):
    return PipelineSpan(INBOUND_REQUEST_SPAN_NAME, {"http.url": url})


class TestPathGroup:
    """Test URL path generalization."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("/orders/482", "/orders/?"),
            ("/health_check", "/health_check"),
            ("/users/42/orders/7", "/users/?/orders/?"),
            ("/v1/payments", "/?/payments"),
            ("/orders/abc-123/refunds", "/orders/?/refunds"),
            ("https://api.example.com/orders/482?expand=true", "/orders/?"),
            ("/orders/", "/orders/"),
            ("/", "/"),
        ],
    )
    def test_path_group(self, url, expected):
        assert path_group(url) == expected

    @pytest.mark.parametrize("url", [None, "", 42, "http://[::1"])
    def test_bad_input_is_empty(self, url):
        assert path_group(url) == ""


class TestFilters:
    """Test the individual filter stages."""

    def test_health_check(self):
        stage = HealthCheckFilter()

        assert stage.drop(inbound("/health_check")) is True
        assert stage.drop(inbound("/health_check/db")) is True
        assert stage.drop(inbound("/orders")) is False
        assert stage.drop(PipelineSpan("task.run", {"http.url": "/health_check"})) is False

    def test_static_assets(self):
        stage = StaticAssetFilter()

        assert stage.drop(inbound("/assets/app.js")) is True
        assert stage.drop(inbound("/packs/main.css")) is True
        assert stage.drop(inbound("/orders")) is False
        assert stage.drop(PipelineSpan("requests.get", {"http.url": "/assets/x"})) is False

    def test_missing_url(self):
        assert HealthCheckFilter().drop(PipelineSpan(INBOUND_REQUEST_SPAN_NAME)) is False
        assert StaticAssetFilter().drop(PipelineSpan(INBOUND_REQUEST_SPAN_NAME)) is False

    def test_third_party_noise(self):
        stage = ThirdPartyNoiseFilter()

        assert stage.drop(PipelineSpan("http", {"peer.hostname": "collector.newrelic.com"}))
        assert not stage.drop(PipelineSpan("http", {"peer.hostname": "api.stripe.com"}))
        assert not stage.drop(PipelineSpan("http"))

    @pytest.mark.parametrize("url", ["/metadata/instance/compute", "/latest/api/token"])
    def test_instance_metadata(self, url):
        assert InstanceMetadataFilter().drop(PipelineSpan("http", {"http.url": url}))

    def test_instance_metadata_exact_match(self):
        stage = InstanceMetadataFilter()

        assert not stage.drop(PipelineSpan("http", {"http.url": "/latest/api/token/x"}))


class TestRewrites:
    """Test the individual rewrite stages."""

    @pytest.mark.parametrize(
        "hostname, expected",
        [
            ("tenant123.myshopify.com", "myshopify.com"),
            ("abcd.ngrok.io", "ngrok.io"),
            ("abcd-12.ngrok-free.app", "ngrok-free.app"),
            ("api.stripe.com", "api.stripe.com"),
        ],
    )
    def test_hostname_grouping(self, hostname, expected):
        span = PipelineSpan("http", {"peer.hostname": hostname})

        HostnameGroupingRewrite().rewrite(span)

        assert span.get_tag("peer.hostname") == expected

    def test_hostname_grouping_without_hostname(self):
        span = PipelineSpan("http")

        HostnameGroupingRewrite().rewrite(span)

        assert span.get_tag("peer.hostname") is None
        assert span.modified is False

    @pytest.mark.parametrize("component", ["net/http", "faraday", "requests", "httpx"])
    def test_outbound_resource(self, component):
        span = PipelineSpan(
            "http.client",
            {"component": component, "http.method": "GET", "http.url": "/orders/482"},
        )

        OutboundResourceRewrite().rewrite(span)

        assert span.resource == "GET /orders/?"

    def test_outbound_resource_without_method(self):
        span = PipelineSpan(
            "http.client", {"component": "requests", "http.url": "/orders/482"}
        )

        OutboundResourceRewrite().rewrite(span)

        assert span.resource == "/orders/?"

    def test_outbound_resource_ignores_other_components(self):
        span = PipelineSpan(
            "db.query",
            {"component": "sqlalchemy", "http.method": "GET", "http.url": "/orders/482"},
        )

        OutboundResourceRewrite().rewrite(span)

        assert span.resource == "db.query"
        assert span.modified is False


class TestSpanPipeline:
    """Test stage ordering and short-circuiting."""

    def test_default_order(self):
        assert [type(stage) for stage in default_stages()] == [
            HealthCheckFilter,
            StaticAssetFilter,
            ThirdPartyNoiseFilter,
            HostnameGroupingRewrite,
            OutboundResourceRewrite,
            InstanceMetadataFilter,
        ]

    def test_end_to_end(self):
        pipeline = default_pipeline()

        health_check = inbound("/health_check")
        tenant = PipelineSpan("http.client", {"peer.hostname": "tenant123.myshopify.com"})
        outbound = PipelineSpan(
            "http.client",
            {"component": "net/http", "http.method": "GET", "http.url": "/orders/482"},
        )

        assert pipeline.process(health_check) is False
        assert pipeline.process(tenant) is True
        assert tenant.get_tag("peer.hostname") == "myshopify.com"
        assert pipeline.process(outbound) is True
        assert outbound.resource == "GET /orders/?"

    def test_drop_short_circuits(self):
        """Test stages after a dropping filter do not run."""
        seen = []

        class DropAll(SpanFilter):
            def drop(self, span):
                return True

        class Record(SpanRewrite):
            def rewrite(self, span):
                seen.append(span.name)

        pipeline = SpanPipeline([Record(), DropAll(), Record()])

        assert pipeline.process(PipelineSpan("x")) is False
        assert seen == ["x"]

    def test_rewrites_apply_in_order(self):
        class SetTag(SpanRewrite):
            def __init__(self, value):
                self.value = value

            def rewrite(self, span):
                span.set_tag("order", self.value)

        span = PipelineSpan("x")
        SpanPipeline([SetTag("first"), SetTag("second")]).process(span)

        assert span.get_tag("order") == "second"


class TestPipelineSpanExporter:
    """Test the exporter wrapper with the OpenTelemetry SDK."""

    @pytest.fixture
    def provider(self, span_exporter):
        provider = TracerProvider(resource=Resource.create({"service.name": "payments"}))
        provider.add_span_processor(
            SimpleSpanProcessor(PipelineSpanExporter(span_exporter, default_pipeline()))
        )
        yield provider
        provider.shutdown()

    def test_filters_and_rewrites(self, provider, span_exporter):
        tracer = provider.get_tracer("tests")

        with tracer.start_as_current_span(
            INBOUND_REQUEST_SPAN_NAME, attributes={"http.url": "/health_check"}
        ):
            pass
        with tracer.start_as_current_span(
            "http.client",
            attributes={
                "component": "requests",
                "http.method": "POST",
                "http.url": "/v1/orders/482/capture",
                "peer.hostname": "shop-1.myshopify.com",
            },
        ):
            pass
        with tracer.start_as_current_span("custom", attributes={"foo": "bar"}):
            pass

        exported = span_exporter.get_finished_spans()
        assert [span.name for span in exported] == ["http.client", "custom"]

        outbound, custom = exported
        assert outbound.attributes["resource.name"] == "POST /?/orders/?/capture"
        assert outbound.attributes["peer.hostname"] == "myshopify.com"
        assert outbound.resource.attributes["service.name"] == "payments"
        assert custom.attributes["foo"] == "bar"

    def test_unmodified_spans_pass_through(self, span_exporter):
        pipeline_exporter = PipelineSpanExporter(span_exporter)
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(pipeline_exporter))

        with provider.get_tracer("tests").start_as_current_span("custom"):
            pass

        [span] = span_exporter.get_finished_spans()
        assert span.name == "custom"
        provider.shutdown()

    def test_service_from_resource(self):
        span = PipelineSpan("x", service="payments")

        assert span.service == "payments"
        span.set_tag("service.name", "checkout")
        assert span.service == "checkout"
