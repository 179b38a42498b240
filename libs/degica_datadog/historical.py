"""Submission of explicitly timestamped metrics through the Datadog API.

These metrics are not sent through the Datadog agent but directly to the
metrics intake API, so they work somewhat differently from statsd metrics:

* only count, rate and gauge series are accepted;
* tags are sent as ``resources`` (name/type pairs) instead of ``"key:value"``;
* a ``DD_API_KEY`` is required.

The intake accepts several points per series and several series per payload.
The public interface only ever produces one point per call, but
:func:`build_payload` takes a list of series so batching can be added later.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum

import structlog
from datadog_api_client import ApiClient, Configuration
from datadog_api_client.v2.api.metrics_api import MetricsApi
from datadog_api_client.v2.model.metric_intake_type import MetricIntakeType
from datadog_api_client.v2.model.metric_payload import MetricPayload
from datadog_api_client.v2.model.metric_point import MetricPoint
from datadog_api_client.v2.model.metric_resource import MetricResource
from datadog_api_client.v2.model.metric_series import MetricSeries

from .config import Config
from .exceptions import InvalidArgumentError, MissingCredentialError

logger = structlog.get_logger(__name__)


class MetricKind(str, Enum):
    """Metric types the intake API accepts for historical points."""

    COUNT = "count"
    RATE = "rate"
    GAUGE = "gauge"

    @classmethod
    def parse(cls, kind: "MetricKind | str") -> "MetricKind":
        try:
            return cls(kind)
        except ValueError:
            raise InvalidArgumentError(f"Invalid metric type: {kind!r}") from None

    def intake_type(self) -> MetricIntakeType:
        return _INTAKE_TYPES[self]


_INTAKE_TYPES: dict[MetricKind, MetricIntakeType] = {
    MetricKind.COUNT: MetricIntakeType.COUNT,
    MetricKind.RATE: MetricIntakeType.RATE,
    MetricKind.GAUGE: MetricIntakeType.GAUGE,
}


def tag_resources(tags: Iterable[str]) -> list[MetricResource]:
    """Break ``["foo:42", "bar:23"]`` style tags apart into resources."""
    resources = []
    for tag in tags:
        name, _, value = tag.partition(":")
        resources.append(MetricResource(name=name, type=value))
    return resources


def build_series(
    kind: MetricKind,
    name: str,
    value: float,
    tags: Iterable[str],
    timestamp: datetime,
) -> MetricSeries:
    """Build a single-point series."""
    point = MetricPoint(timestamp=int(timestamp.timestamp()), value=float(value))
    return MetricSeries(
        metric=name,
        type=kind.intake_type(),
        points=[point],
        resources=tag_resources(tags),
    )


def build_payload(series: Sequence[MetricSeries]) -> MetricPayload:
    return MetricPayload(series=list(series))


class HistoricalMetricSubmitter:
    """Sends timestamped metric points straight to the metrics intake API."""

    def __init__(self, config: Config, api: MetricsApi | None = None):
        self.config = config
        self._api = api

    @property
    def api(self) -> MetricsApi:
        if not self.config.api_key:
            raise MissingCredentialError("Missing DD_API_KEY environment variable")

        if self._api is None:
            configuration = Configuration(api_key={"apiKeyAuth": self.config.api_key})
            self._api = MetricsApi(ApiClient(configuration))

        return self._api

    def submit(
        self,
        kind: MetricKind | str,
        name: str,
        value: float,
        tags: Iterable[str],
        timestamp: datetime,
    ) -> None:
        """Submit one point recorded at ``timestamp``.

        Raises:
            InvalidArgumentError: ``timestamp`` is not a datetime, or ``kind``
                is not count, rate or gauge.
            MissingCredentialError: no API key is configured. Checked before
                anything is sent.
        """
        if not isinstance(timestamp, datetime):
            raise InvalidArgumentError("Invalid metric timestamp, use a datetime")

        metric_kind = MetricKind.parse(kind)
        payload = build_payload(
            [build_series(metric_kind, name, value, tags, timestamp)]
        )

        api = self.api
        logger.debug(
            "Submitting historical metric",
            metric=name,
            kind=metric_kind.value,
            timestamp=timestamp.isoformat(),
        )
        api.submit_metrics(body=payload)
