"""Python runtime metrics reported through the statsd emitter."""

import gc
import threading

import psutil
import structlog

from .statsd import MetricEmitter, get_emitter

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 10.0
RUNTIME_TAGS = {"lang": "python"}


class RuntimeMetricsCollector:
    """Periodically gauges CPU, memory, thread and GC stats of this process.

    Names follow the ``runtime.python.*`` metrics of the Datadog runtime
    metrics dashboard.
    """

    def __init__(
        self,
        emitter: MetricEmitter | None = None,
        interval: float = DEFAULT_INTERVAL,
        process: psutil.Process | None = None,
    ):
        self._emitter = emitter
        self.interval = interval
        self.process = process or psutil.Process()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def emitter(self) -> MetricEmitter:
        return self._emitter or get_emitter()

    def collect(self) -> dict[str, float]:
        cpu_times = self.process.cpu_times()
        ctx_switches = self.process.num_ctx_switches()
        gen0, gen1, gen2 = gc.get_count()

        return {
            "runtime.python.cpu.time.user": cpu_times.user,
            "runtime.python.cpu.time.sys": cpu_times.system,
            "runtime.python.cpu.percent": self.process.cpu_percent(),
            "runtime.python.cpu.ctx_switch.voluntary": ctx_switches.voluntary,
            "runtime.python.cpu.ctx_switch.involuntary": ctx_switches.involuntary,
            "runtime.python.mem.rss": self.process.memory_info().rss,
            "runtime.python.thread_count": threading.active_count(),
            "runtime.python.gc.count.gen0": gen0,
            "runtime.python.gc.count.gen1": gen1,
            "runtime.python.gc.count.gen2": gen2,
        }

    def report(self) -> None:
        """Gauge one snapshot of the runtime metrics."""
        for name, value in self.collect().items():
            self.emitter.gauge(name, value, tags=RUNTIME_TAGS)

    def start(self) -> None:
        if self._thread is not None:
            return

        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._run, name="degica-datadog-runtime-metrics", daemon=True
        )
        self._thread.start()
        logger.debug("Runtime metrics reporting started", interval=self.interval)

    def stop(self, timeout: float | None = None) -> None:
        if self._thread is None:
            return

        self._stopped.set()
        self._thread.join(timeout)
        self._thread = None
        logger.debug("Runtime metrics reporting stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.report()
            except Exception as e:
                logger.warning("Failed to report runtime metrics", error=str(e))
