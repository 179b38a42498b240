"""Tests for log correlation processors."""

from libs.degica_datadog import init
from libs.degica_datadog.logging import (
    add_correlation_context,
    add_service_context,
    add_trace_context,
    set_correlation_id,
)


class TestLogProcessors:
    """Test the structlog processors."""

    def test_trace_context(self, enabled_config, make_tracing):
        tracing = make_tracing(enabled_config)

        with tracing.span("checkout") as span:
            event_dict = add_trace_context(None, "info", {"event": "charged"})
            span_context = span.get_span_context()

        assert event_dict["dd.trace_id"] == str(span_context.trace_id & (2**64 - 1))
        assert event_dict["dd.span_id"] == str(span_context.span_id)

    def test_no_trace_context_outside_span(self):
        event_dict = add_trace_context(None, "info", {"event": "charged"})

        assert "dd.trace_id" not in event_dict
        assert "dd.span_id" not in event_dict

    def test_service_context(self):
        init(service_name="payments", version="abc123", environment="staging")

        event_dict = add_service_context(None, "info", {"event": "charged"})

        assert event_dict["dd.service"] == "payments"
        assert event_dict["dd.env"] == "staging"
        assert event_dict["dd.version"] == "abc123"

    def test_correlation_context(self):
        set_correlation_id("req-123")

        assert add_correlation_context(None, "info", {})["correlation_id"] == "req-123"
        assert (
            add_correlation_context(None, "info", {"correlation_id": "explicit"})[
                "correlation_id"
            ]
            == "explicit"
        )
