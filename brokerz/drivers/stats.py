"""
Per-driver statistics.

Counters only grow; gauges are set by the driver as its state changes.
snapshot() returns a BrokerStats copy, so callers never share state with
the collector.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

from brokerz.core.types import BrokerStats

if TYPE_CHECKING:  # pragma: no cover
    from brokerz.monitoring.prometheus import PrometheusMetrics

COUNTERS = (
    "messages_published",
    "messages_consumed",
    "messages_failed",
    "jobs_enqueued",
    "jobs_processed",
    "jobs_failed",
)
GAUGES = ("active_connections", "active_subscriptions", "topic_count", "queue_count")


class StatsCollector:
    def __init__(self, driver: str, metrics: PrometheusMetrics | None = None):
        self.driver = driver
        self.metrics = metrics
        self._lock = threading.Lock()
        self._values: dict[str, int] = dict.fromkeys(COUNTERS + GAUGES, 0)
        self._info: dict[str, str] = {}
        self._started = time.monotonic()

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in COUNTERS:
            msg = f"Unknown counter: {counter}"
            raise KeyError(msg)
        if amount < 0:
            msg = "Counters cannot decrease"
            raise ValueError(msg)
        with self._lock:
            self._values[counter] += amount
        if self.metrics is not None:
            self.metrics.increment(counter, self.driver, amount)

    def set_gauge(self, gauge: str, value: int) -> None:
        if gauge not in GAUGES:
            msg = f"Unknown gauge: {gauge}"
            raise KeyError(msg)
        with self._lock:
            self._values[gauge] = value

    def set_info(self, key: str, value: str) -> None:
        with self._lock:
            self._info[key] = value

    def get(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def snapshot(self) -> BrokerStats:
        with self._lock:
            values = dict(self._values)
            info = dict(self._info)
        return BrokerStats(
            **values,
            uptime=time.monotonic() - self._started,
            driver_info=info,
        )
