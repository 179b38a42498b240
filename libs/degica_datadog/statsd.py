"""StatsD metric emission."""

import functools
import inspect
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

import structlog
from datadog import DogStatsd

from .config import Config, get_config
from .historical import HistoricalMetricSubmitter, MetricKind
from .tags import format_tags

F = TypeVar("F", bound=Callable[..., Any])

Tags = Mapping[str, Any] | None

logger = structlog.get_logger(__name__)


class MetricEmitter:
    """Records metrics through the local Datadog agent.

    All operations do nothing while the integration is disabled, except
    :meth:`with_timing`, whose block always runs.
    """

    def __init__(
        self,
        config: Config,
        client: DogStatsd | None = None,
        historical: HistoricalMetricSubmitter | None = None,
    ):
        self.config = config
        self._client = client
        self._historical = historical

    @property
    def client(self) -> DogStatsd:
        if self._client is None:
            self._client = DogStatsd(
                host=self.config.agent_host, port=self.config.statsd_port
            )
            logger.debug(
                "StatsD client created",
                host=self.config.agent_host,
                port=self.config.statsd_port,
            )
        return self._client

    @property
    def historical(self) -> HistoricalMetricSubmitter:
        if self._historical is None:
            self._historical = HistoricalMetricSubmitter(self.config)
        return self._historical

    @contextmanager
    def with_timing(self, name: str, tags: Tags = None) -> Iterator[None]:
        """Record a timing for the wrapped block.

        Creates the ``<name>.count``, ``.max``, ``.median``, ``.avg`` and
        ``.95percentile`` series. The reported time is in milliseconds and is
        recorded even when the block raises.
        """
        if not self.config.enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.client.histogram(
                name, duration_ms, tags=format_tags(self.config, tags)
            )

    def timed(self, name: str, tags: Tags = None) -> Callable[[F], F]:
        """Decorator form of :meth:`with_timing`."""

        def decorator(func: F) -> F:
            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.with_timing(name, tags):
                    return func(*args, **kwargs)

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.with_timing(name, tags):
                    return await func(*args, **kwargs)

            if inspect.iscoroutinefunction(func):
                return async_wrapper  # type: ignore
            else:
                return sync_wrapper  # type: ignore

        return decorator

    def count(
        self,
        name: str,
        amount: float = 1,
        tags: Tags = None,
        timestamp: datetime | None = None,
    ) -> None:
        """Record a count of something (e.g. a payment going through).

        Use ``amount`` to register several of a thing, or a negative amount
        to decrement. All recorded amounts are summed.
        """
        if not self.config.enabled:
            return

        formatted = format_tags(self.config, tags)

        if timestamp is None:
            self.client.count(name, amount, tags=formatted)
        else:
            self.historical.submit(MetricKind.COUNT, name, amount, formatted, timestamp)

    def gauge(
        self,
        name: str,
        value: float,
        tags: Tags = None,
        timestamp: datetime | None = None,
    ) -> None:
        """Record the current value of something (e.g. the depth of a queue)."""
        if not self.config.enabled:
            return

        formatted = format_tags(self.config, tags)

        if timestamp is None:
            self.client.gauge(name, value, tags=formatted)
        else:
            self.historical.submit(MetricKind.GAUGE, name, value, formatted, timestamp)

    def distribution(self, name: str, value: float, tags: Tags = None) -> None:
        """Record a value for a distribution with percentiles enabled."""
        if not self.config.enabled:
            return

        self.client.distribution(name, value, tags=format_tags(self.config, tags))

    def set(self, name: str, item: Any, tags: Tags = None) -> None:
        """Record an item for a set size metric.

        Shows the count of unique items over time, not the items themselves.
        """
        if not self.config.enabled:
            return

        self.client.set(name, item, tags=format_tags(self.config, tags))


_emitter: MetricEmitter | None = None


def get_emitter() -> MetricEmitter:
    """Get the process-wide metric emitter."""
    global _emitter

    if _emitter is None:
        _emitter = MetricEmitter(get_config())

    return _emitter


def configure_emitter(emitter: MetricEmitter | None) -> None:
    global _emitter
    _emitter = emitter
