"""
Prometheus metrics for broker drivers.

Quick Start:
    >>> from brokerz.monitoring.prometheus import PrometheusMetrics, start_metrics_server
    >>> start_metrics_server(port=8000)
    >>> metrics = PrometheusMetrics()
    >>> manager = BrokerManager(config, metrics=metrics)

Requirements:
    pip install prometheus-client
"""

from typing import Any

from brokerz.core.logger import get_logger

try:
    from prometheus_client import REGISTRY, Counter, Gauge, start_http_server

    PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover
    PROMETHEUS_AVAILABLE = False
    REGISTRY: Any = None  # type: ignore[no-redef]
    Counter: Any = None  # type: ignore[no-redef]
    Gauge: Any = None  # type: ignore[no-redef]
    start_http_server: Any = None  # type: ignore[no-redef]


logger = get_logger(__name__)


class PrometheusMetrics:
    """
    Prometheus collector fed by StatsCollector and HealthMonitor.

    Exposes:
        - <prefix>_messages_published_total{driver}
        - <prefix>_messages_consumed_total{driver}
        - <prefix>_messages_failed_total{driver}
        - <prefix>_jobs_enqueued_total{driver}
        - <prefix>_jobs_processed_total{driver}
        - <prefix>_jobs_failed_total{driver}
        - <prefix>_driver_healthy{driver}
    """

    _COUNTERS = {
        "messages_published": "Messages published",
        "messages_consumed": "Messages handled successfully",
        "messages_failed": "Messages whose handler failed",
        "jobs_enqueued": "Jobs enqueued",
        "jobs_processed": "Jobs handled successfully",
        "jobs_failed": "Jobs whose handler failed",
    }

    def __init__(self, prefix: str = "brokerz", registry: Any = None):
        """
        Args:
            prefix: Metric name prefix
            registry: prometheus_client registry (default: the global one)
        """
        if not PROMETHEUS_AVAILABLE:
            logger.warning(
                "prometheus-client not installed. Metrics will not be collected. "
                "Install with: pip install prometheus-client"
            )
            self._enabled = False
            return

        self._enabled = True
        registry = registry if registry is not None else REGISTRY
        self._counters = {
            name: Counter(f"{prefix}_{name}_total", doc, ["driver"], registry=registry)
            for name, doc in self._COUNTERS.items()
        }
        self._healthy = Gauge(
            f"{prefix}_driver_healthy",
            "1 when the driver's last health probe succeeded",
            ["driver"],
            registry=registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def increment(self, counter: str, driver: str, amount: int = 1) -> None:
        if not self._enabled:
            return
        metric = self._counters.get(counter)
        if metric is not None:
            metric.labels(driver=driver).inc(amount)

    def set_healthy(self, driver: str, healthy: bool) -> None:
        if not self._enabled:
            return
        self._healthy.labels(driver=driver).set(1 if healthy else 0)


def start_metrics_server(port: int = 8000, addr: str = "0.0.0.0") -> None:
    """Start a Prometheus HTTP metrics server."""
    if not PROMETHEUS_AVAILABLE:
        logger.error(
            "Cannot start metrics server: prometheus-client not installed. "
            "Install with: pip install prometheus-client"
        )
        return

    start_http_server(port, addr)
    logger.info(f"Prometheus metrics server started on port {port}")


def is_prometheus_available() -> bool:
    """Check if prometheus-client is installed."""
    return PROMETHEUS_AVAILABLE
