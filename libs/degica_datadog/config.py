"""Configuration for the Datadog integration."""

import json
from collections.abc import Mapping
from functools import cached_property
from pathlib import Path
from urllib.parse import SplitResult, urlsplit

import structlog
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

ENABLED_ENVIRONMENTS = ("production", "staging")
DISABLE_FLAG_VALUES = ("true", "1")

DEFAULT_AGENT_HOST = "localhost"
DEFAULT_TRACING_PORT = 8126
ECS_AGENT_PORT = 9126


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = "INFO"
    format: str = "json"  # json or console
    enable_correlation: bool = True
    enable_trace_context: bool = True


class DatadogSettings(BaseSettings):
    """Snapshot of the environment variables the integration understands.

    The variable names are shared with the other services reporting to the
    same Datadog account, so they are aliased verbatim instead of prefixed.
    Only the aliases are read, also when building settings by hand:
    ``DatadogSettings(SERVICE_NAME="payments")``.
    """

    model_config = SettingsConfigDict(
        case_sensitive=True,
        extra="ignore",
    )

    service_name: str | None = Field(default=None, validation_alias="SERVICE_NAME")
    platform: str = Field(default="", validation_alias="PLATFORM")
    git_revision: str = Field(default="unknown", validation_alias="_GIT_REVISION")
    o11y_env: str | None = Field(default=None, validation_alias="O11Y_ENV")
    framework_env: str | None = Field(default=None, validation_alias="RAILS_ENV")
    aws_region: str | None = Field(default=None, validation_alias="O11Y_AWS_REGION")
    agent_uri: str | None = Field(default=None, validation_alias="DD_AGENT_URI")
    ecs_container_metadata_file: str | None = Field(
        default=None, validation_alias="ECS_CONTAINER_METADATA_FILE"
    )
    disable_flag: str | None = Field(
        default=None, validation_alias="DISABLE_DEGICA_DATADOG"
    )
    api_key: str | None = Field(default=None, validation_alias="DD_API_KEY")


class Config:
    """Resolved identity and connectivity settings.

    Every value is computed on first access and memoized on the instance.
    Explicit overrides are constructor arguments; :func:`init` builds a
    fresh ``Config`` rather than mutating the current one.

    Concurrent first access may compute a value twice.
    """

    def __init__(
        self,
        service_name: str | None = None,
        version: str | None = None,
        environment: str | None = None,
        repository_url: str | None = None,
        aws_region: str | None = None,
        settings: DatadogSettings | None = None,
    ):
        self._service_name = service_name
        self._version = version
        self._environment = environment
        self._repository_url = repository_url
        self._aws_region = aws_region
        self._settings = settings

    @cached_property
    def settings(self) -> DatadogSettings:
        if self._settings is not None:
            return self._settings
        return DatadogSettings()

    @cached_property
    def enabled(self) -> bool:
        """Whether metrics and traces should be sent at all."""
        if self.settings.disable_flag in DISABLE_FLAG_VALUES:
            return False

        # Local setups opt in by pointing at an agent explicitly.
        return (
            self.environment in ENABLED_ENVIRONMENTS
            or self.settings.agent_uri is not None
        )

    @cached_property
    def service(self) -> str:
        return self._service_name or self.settings.service_name or "unknown"

    @cached_property
    def version(self) -> str:
        if self._version:
            return self._version

        platform = self.settings.platform
        git_revision = self.settings.git_revision
        return f"{git_revision}-{platform}" if platform else git_revision

    @cached_property
    def environment(self) -> str:
        return (
            self._environment
            or self.settings.o11y_env
            or self.settings.framework_env
            or "unknown"
        )

    @cached_property
    def repository_url(self) -> str:
        return self._repository_url or f"github.com/komoju/{self.service}"

    @cached_property
    def aws_region(self) -> str | None:
        return self._aws_region or self.settings.aws_region

    @cached_property
    def api_key(self) -> str | None:
        return self.settings.api_key

    @cached_property
    def agent_uri(self) -> SplitResult | None:
        """URI of the tracing endpoint, including scheme and port."""
        if not self.enabled:
            return None

        metadata_file = self.settings.ecs_container_metadata_file
        if metadata_file:
            metadata = json.loads(Path(metadata_file).read_text())
            if not isinstance(metadata, Mapping):
                raise ConfigurationError(
                    f"Container metadata file {metadata_file} must hold a JSON object"
                )
            host_ip = metadata.get("HostPrivateIPv4Address")
            if host_ip:
                logger.debug(
                    "Resolved Datadog agent from container metadata",
                    host_ip=host_ip,
                    metadata_file=metadata_file,
                )
                return urlsplit(f"http://{host_ip}:{ECS_AGENT_PORT}")

        if self.settings.agent_uri is not None:
            return urlsplit(self.settings.agent_uri)

        return None

    @cached_property
    def agent_host(self) -> str:
        if self.agent_uri is not None and self.agent_uri.hostname:
            return self.agent_uri.hostname
        return DEFAULT_AGENT_HOST

    @cached_property
    def tracing_port(self) -> int:
        if self.agent_uri is not None and self.agent_uri.port:
            return self.agent_uri.port
        return DEFAULT_TRACING_PORT

    @property
    def statsd_port(self) -> int:
        return self.tracing_port - 1

    def describe(self) -> dict[str, object]:
        """All resolved values, for logging at startup."""
        return {
            "enabled": self.enabled,
            "service": self.service,
            "version": self.version,
            "environment": self.environment,
            "repository_url": self.repository_url,
            "agent_host": self.agent_host,
            "statsd_port": self.statsd_port,
            "tracing_port": self.tracing_port,
            "aws_region": self.aws_region,
        }

    def __repr__(self) -> str:
        fields = " ".join(f"{key}={value!r}" for key, value in self.describe().items())
        return f"Config<{fields}>"


_config: Config | None = None


def get_config() -> Config:
    """Get the process-wide configuration singleton."""
    global _config

    if _config is None:
        _config = Config()

    return _config


def configure_config(config: Config | None) -> None:
    """Replace the process-wide configuration (init and tests)."""
    global _config
    _config = config
