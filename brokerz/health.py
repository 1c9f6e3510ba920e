"""
Health checks for broker drivers.

HealthMonitor pings one driver on a fixed interval and keeps the last
result, so the manager can answer health queries without touching the
backend.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from brokerz.core.logger import get_logger
from brokerz.drivers.base import MessageBroker

if TYPE_CHECKING:  # pragma: no cover
    from brokerz.monitoring.prometheus import PrometheusMetrics

logger = get_logger(__name__)


class HealthStatus(Enum):
    """Driver health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Reachable but slow
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """
    Result of a health check operation.

    Attributes:
        status: Overall health status
        latency_ms: Time taken for the ping in milliseconds
        message: Human-readable status message
        details: Additional driver-specific details
        checked_at: Timestamp of the check
    """

    status: HealthStatus
    latency_ms: float
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_healthy(self) -> bool:
        """Check if status is healthy or degraded (still operational)."""
        return self.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "status": self.status.value,
            "is_healthy": self.is_healthy,
            "latency_ms": round(self.latency_ms, 2),
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


async def check_health_with_timeout(
    driver: MessageBroker,
    timeout: float = 5.0,
) -> HealthCheckResult:
    """
    Ping a driver with timeout protection.

    A ping slower than half the timeout is reported as DEGRADED.

    Args:
        driver: The driver to ping
        timeout: Maximum time to wait in seconds

    Returns:
        HealthCheckResult (UNHEALTHY on timeout or error, never raises)
    """
    start = time.perf_counter()

    try:
        await asyncio.wait_for(driver.ping(), timeout=timeout)
    except TimeoutError:
        elapsed_ms = (time.perf_counter() - start) * 1000
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            latency_ms=elapsed_ms,
            message=f"Health check timed out after {timeout}s",
            details={"driver": driver.name},
        )
    except Exception as e:
        elapsed_ms = (time.perf_counter() - start) * 1000
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            latency_ms=elapsed_ms,
            message=f"Health check failed: {e}",
            details={"driver": driver.name, "error": str(e), "error_type": type(e).__name__},
        )

    elapsed_ms = (time.perf_counter() - start) * 1000
    if elapsed_ms > timeout * 500:
        return HealthCheckResult(
            status=HealthStatus.DEGRADED,
            latency_ms=elapsed_ms,
            message=f"Slow ping ({elapsed_ms:.0f}ms)",
            details={"driver": driver.name},
        )
    return HealthCheckResult(
        status=HealthStatus.HEALTHY,
        latency_ms=elapsed_ms,
        message="OK",
        details={"driver": driver.name},
    )


class HealthMonitor:
    """
    Periodic health checker for one driver.

    The driver is considered healthy until a check says otherwise.

    Example:
        >>> monitor = HealthMonitor("kv", driver, interval=30.0)
        >>> monitor.start()
        >>> monitor.healthy
        True
        >>> await monitor.stop()
    """

    def __init__(
        self,
        name: str,
        driver: MessageBroker,
        interval: float = 30.0,
        timeout: float = 5.0,
        metrics: PrometheusMetrics | None = None,
    ):
        self.name = name
        self.driver = driver
        self.interval = interval
        self.timeout = timeout
        self.metrics = metrics
        self._healthy = True
        self._last_result: HealthCheckResult | None = None
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def healthy(self) -> bool:
        return self._healthy

    @property
    def last_result(self) -> HealthCheckResult | None:
        return self._last_result

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop. No-op when already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"brokerz-health-{self.name}")
        logger.debug(f"Health monitor started for {self.name} (every {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background loop. Idempotent."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop_event.set()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.debug(f"Health monitor stopped for {self.name}")

    async def check_now(self) -> HealthCheckResult:
        """Run one check immediately and record its result."""
        result = await check_health_with_timeout(self.driver, self.timeout)
        self._record(result)
        return result

    def _record(self, result: HealthCheckResult) -> None:
        was_healthy = self._healthy
        self._healthy = result.is_healthy
        self._last_result = result
        if self.metrics is not None:
            self.metrics.set_healthy(self.name, self._healthy)

        if not result.is_healthy:
            logger.warning(
                f"Driver {self.name} health check failed: {result.message}",
                extra={"driver": self.name},
            )
        elif not was_healthy:
            logger.info(f"Driver {self.name} recovered ({result.latency_ms:.1f}ms)")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                await self.check_now()


__all__ = [
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",
    "check_health_with_timeout",
]
