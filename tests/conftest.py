"""Pytest configuration and shared fixtures."""

from unittest.mock import Mock

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
    InMemorySpanExporter,
)

from libs.degica_datadog import configure_config, configure_emitter, configure_tracing
from libs.degica_datadog.config import Config
from libs.degica_datadog.tracing import RootSpanTracker, Tracing, register_tasks

DATADOG_ENV_VARS = (
    "SERVICE_NAME",
    "PLATFORM",
    "_GIT_REVISION",
    "O11Y_ENV",
    "RAILS_ENV",
    "O11Y_AWS_REGION",
    "DD_AGENT_URI",
    "ECS_CONTAINER_METADATA_FILE",
    "DISABLE_DEGICA_DATADOG",
    "DD_API_KEY",
    "DD_GIT_COMMIT_SHA",
    "DD_GIT_REPOSITORY_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep tests hermetic from the developer's environment."""
    for name in DATADOG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    yield

    configure_config(None)
    configure_emitter(None)
    configure_tracing(None)
    register_tasks(())


@pytest.fixture
def production_env(monkeypatch):
    """Environment of a production deployment."""
    monkeypatch.setenv("O11Y_ENV", "production")
    monkeypatch.setenv("SERVICE_NAME", "payments")
    monkeypatch.setenv("_GIT_REVISION", "abc123")
    monkeypatch.setenv("DD_API_KEY", "test-api-key")


@pytest.fixture
def enabled_config(production_env):
    return Config()


@pytest.fixture
def disabled_config(monkeypatch):
    monkeypatch.setenv("O11Y_ENV", "development")
    return Config()


@pytest.fixture
def statsd_client():
    """Stand-in for the DogStatsd client."""
    return Mock()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def root_tracker():
    return RootSpanTracker()


@pytest.fixture
def tracer_provider(span_exporter, root_tracker):
    """Local tracer provider; the global one is never touched in tests."""
    provider = TracerProvider()
    provider.add_span_processor(root_tracker)
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield provider
    provider.shutdown()


@pytest.fixture
def make_tracing(tracer_provider, root_tracker):
    def factory(config: Config, tasks=()) -> Tracing:
        return Tracing(
            config,
            tracer=tracer_provider.get_tracer("tests"),
            root_tracker=root_tracker,
            tasks=tasks,
        )

    return factory
