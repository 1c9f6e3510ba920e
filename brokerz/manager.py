"""
Broker Manager - unified facade over the configured drivers.

The manager builds the default driver from configuration, starts a health
monitor for every driver it installs, and offers three kinds of operations:

- delegating ones (publish, subscribe, enqueue_job, ...) on the default driver,
- the same operations on a named driver through ``via(name)``,
- cross-driver ones: ``broadcast`` (many topics, one driver) and ``mirror``
  (one topic, many drivers).

Usage:
    >>> from brokerz import BrokerManager
    >>>
    >>> async with BrokerManager.from_env() as broker:
    ...     await broker.send_message("orders", {"order_id": "123"})
    ...     await broker.via("kafka").publish_json("audit", {"event": "created"})
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from brokerz.core.config import BrokerConfig
from brokerz.core.env import EnvManager
from brokerz.core.exceptions import (
    BroadcastError,
    BrokerClosedError,
    BrokerError,
    DefaultUnavailableError,
    DriverNotConfiguredError,
    DriverNotSupportedError,
    MirrorError,
)
from brokerz.core.logger import get_logger
from brokerz.core.types import (
    BrokerStats,
    Job,
    JobHandler,
    Message,
    MessageHandler,
    Subscription,
    TopicConfig,
    TopicInfo,
    to_payload,
)
from brokerz.drivers.base import BaseDriver
from brokerz.drivers.factory import create_driver, normalize_driver_name
from brokerz.health import HealthCheckResult, HealthMonitor
from brokerz.monitoring.prometheus import PrometheusMetrics

logger = get_logger(__name__)

CONVENIENCE_TIMEOUT = 10.0
MULTI_TIMEOUT = 30.0


class _DriverOperations:
    """Driver operations delegated to whatever ``_target()`` resolves to."""

    def _target(self, operation: str) -> BaseDriver:
        raise NotImplementedError

    async def publish(self, topic: str, message: Message, timeout: float | None = None) -> None:
        await self._target("publish").publish(topic, message, timeout=timeout)

    async def publish_json(self, topic: str, data: Any, timeout: float | None = None) -> Message:
        return await self._target("publish_json").publish_json(topic, data, timeout=timeout)

    async def publish_with_delay(
        self, topic: str, message: Message, delay: float, timeout: float | None = None
    ) -> None:
        await self._target("publish_with_delay").publish_with_delay(topic, message, delay, timeout=timeout)

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        return await self._target("subscribe").subscribe(topic, handler)

    async def subscribe_with_group(self, topic: str, group: str, handler: MessageHandler) -> Subscription:
        return await self._target("subscribe_with_group").subscribe_with_group(topic, group, handler)

    async def enqueue_job(self, queue: str, job: Job, timeout: float | None = None) -> None:
        await self._target("enqueue_job").enqueue_job(queue, job, timeout=timeout)

    async def process_jobs(self, queue: str, handler: JobHandler) -> Subscription:
        return await self._target("process_jobs").process_jobs(queue, handler)

    async def create_topic(
        self, topic: str, config: TopicConfig | None = None, timeout: float | None = None
    ) -> None:
        await self._target("create_topic").create_topic(topic, config, timeout=timeout)

    async def delete_topic(self, topic: str, timeout: float | None = None) -> None:
        await self._target("delete_topic").delete_topic(topic, timeout=timeout)

    async def get_topic_info(self, topic: str, timeout: float | None = None) -> TopicInfo:
        return await self._target("get_topic_info").get_topic_info(topic, timeout=timeout)

    async def ping(self, timeout: float | None = None) -> None:
        await self._target("ping").ping(timeout=timeout)

    async def get_stats(self) -> BrokerStats:
        return await self._target("get_stats").get_stats()


class DriverSwitcher(_DriverOperations):
    """
    One-shot handle running operations against a named driver.

    Obtained from ``BrokerManager.via(name)``; never changes the default.
    """

    def __init__(self, manager: BrokerManager, name: str):
        self._manager = manager
        self.name = name

    def _target(self, operation: str) -> BaseDriver:
        self._manager._ensure_open(operation)
        driver = self._manager.driver(self.name)
        if driver is None:
            raise DriverNotConfiguredError(self.name, "driver is not installed")
        return driver

    def __repr__(self) -> str:
        return f"DriverSwitcher({self.name!r})"


class BrokerManager(_DriverOperations):
    """
    Facade owning the installed drivers and their health monitors.

    Args:
        config: Broker configuration (default driver and per-driver blocks)
        health_interval: Seconds between health checks
        health_timeout: Deadline for one health check ping
        driver_factory: Builds a driver from (name, config, **kwargs)
        metrics: Optional Prometheus collector shared by all drivers
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        health_interval: float = 30.0,
        health_timeout: float = 5.0,
        driver_factory: Callable[..., BaseDriver] = create_driver,
        metrics: PrometheusMetrics | None = None,
    ):
        self.config = config or BrokerConfig()
        self.health_interval = health_interval
        self.health_timeout = health_timeout
        self.driver_factory = driver_factory
        self.metrics = metrics
        self._drivers: dict[str, BaseDriver] = {}
        self._monitors: dict[str, HealthMonitor] = {}
        self._default: str | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_env(cls, env: EnvManager | None = None, **kwargs: Any) -> BrokerManager:
        """Create a manager configured from MESSAGE_BROKER_* and backend variables."""
        return cls(BrokerConfig.from_env(env), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Validate the configuration, then construct and connect the default driver.

        Raises:
            InvalidConfigurationError, DriverNotSupportedError,
            MissingDependencyError, ConnectionFailedError
        """
        self._ensure_open("connect")
        self.config.validate()
        name = normalize_driver_name(self.config.driver)
        async with self._lock:
            if name not in self._drivers:
                await self._install(name)
            self._default = name
        logger.info(f"Broker manager ready (default driver: {name})")

    async def _install(self, name: str) -> BaseDriver:
        driver = self.driver_factory(name, self.config, metrics=self.metrics)
        await driver.connect()
        self._drivers[name] = driver
        monitor = HealthMonitor(
            name, driver, interval=self.health_interval, timeout=self.health_timeout, metrics=self.metrics
        )
        self._monitors[name] = monitor
        monitor.start()
        logger.info(f"Installed {name} driver")
        return driver

    async def close(self) -> None:
        """
        Stop every health monitor, then close every driver.

        All drivers are closed even when one fails; the last failure is
        re-raised. Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        for monitor in self._monitors.values():
            await monitor.stop()

        last_error: Exception | None = None
        for name, driver in self._drivers.items():
            try:
                await driver.close()
            except Exception as e:
                logger.error(f"Failed to close {name} driver: {e}")
                last_error = e
        logger.info("Broker manager closed")
        if last_error is not None:
            raise last_error

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise BrokerClosedError("manager", operation)

    async def __aenter__(self) -> BrokerManager:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Driver selection
    # ------------------------------------------------------------------

    def driver(self, name: str) -> BaseDriver | None:
        """Installed driver for a name or alias, or None."""
        try:
            return self._drivers.get(normalize_driver_name(name))
        except DriverNotSupportedError:
            return None

    @property
    def default_driver(self) -> BaseDriver | None:
        if self._default is None:
            return None
        return self._drivers.get(self._default)

    @property
    def default_name(self) -> str | None:
        return self._default

    def available_drivers(self) -> list[str]:
        """Names of the installed drivers."""
        return list(self._drivers)

    async def set_default(self, name: str) -> None:
        """
        Make ``name`` the default driver, constructing it from configuration if needed.

        Raises:
            DriverNotConfiguredError: If the driver cannot be constructed or
                connected; the previous default stays in place
        """
        self._ensure_open("set_default")
        async with self._lock:
            try:
                canonical = normalize_driver_name(name)
                if canonical not in self._drivers:
                    await self._install(canonical)
            except BrokerError as e:
                raise DriverNotConfiguredError(name, str(e)) from e
            previous, self._default = self._default, canonical
        logger.info(f"Default driver switched from {previous} to {canonical}")

    def via(self, name: str) -> DriverSwitcher:
        """
        Run the next operations against ``name`` instead of the default.

        Raises:
            DriverNotConfiguredError: If the driver is not installed
        """
        self._ensure_open("via")
        if self.driver(name) is None:
            raise DriverNotConfiguredError(name, "driver is not installed")
        return DriverSwitcher(self, name)

    using = via

    def _target(self, operation: str) -> BaseDriver:
        self._ensure_open(operation)
        driver = self.default_driver
        if driver is None or driver.is_closed:
            raise DefaultUnavailableError(operation)
        return driver

    # ------------------------------------------------------------------
    # Cross-driver operations
    # ------------------------------------------------------------------

    async def broadcast(self, topics: list[str], payload: Any, timeout: float = MULTI_TIMEOUT) -> list[Message]:
        """
        Publish one payload to several topics on the default driver.

        The payload is marshalled once. Topics published before a failure
        stay published.

        Raises:
            BroadcastError: Naming the failed topic and those already published
        """
        driver = self._target("broadcast")
        body = to_payload(payload)
        published: list[str] = []
        messages: list[Message] = []
        for topic in topics:
            message = Message(topic=topic, payload=body, max_retries=self.config.retry.max_retries)
            try:
                await driver.publish(topic, message, timeout=timeout)
            except Exception as e:
                raise BroadcastError(topic, published, e) from e
            published.append(topic)
            messages.append(message)
        return messages

    async def mirror(
        self, drivers: list[str], topic: str, payload: Any, timeout: float = MULTI_TIMEOUT
    ) -> list[Message]:
        """
        Publish one payload to ``topic`` on each named driver.

        Raises:
            MirrorError: Naming the failed driver and those already published to
        """
        self._ensure_open("mirror")
        body = to_payload(payload)
        published: list[str] = []
        messages: list[Message] = []
        for name in drivers:
            message = Message(topic=topic, payload=body, max_retries=self.config.retry.max_retries)
            try:
                driver = self.driver(name)
                if driver is None:
                    raise DriverNotConfiguredError(name, "driver is not installed")
                await driver.publish(topic, message, timeout=timeout)
            except Exception as e:
                raise MirrorError(name, topic, published, e) from e
            published.append(name)
            messages.append(message)
        return messages

    # ------------------------------------------------------------------
    # Health and statistics
    # ------------------------------------------------------------------

    def health_check(self) -> dict[str, bool]:
        """Last known liveness of every installed driver (no live probe)."""
        return {name: monitor.healthy for name, monitor in self._monitors.items()}

    def is_healthy(self, name: str) -> bool:
        try:
            monitor = self._monitors.get(normalize_driver_name(name))
        except DriverNotSupportedError:
            return False
        return monitor is not None and monitor.healthy

    def health_results(self) -> dict[str, HealthCheckResult | None]:
        return {name: monitor.last_result for name, monitor in self._monitors.items()}

    async def refresh_health(self) -> dict[str, bool]:
        """Probe every installed driver now and return the updated snapshot."""
        for monitor in self._monitors.values():
            await monitor.check_now()
        return self.health_check()

    async def get_all_stats(self) -> dict[str, BrokerStats]:
        return {name: await driver.get_stats() for name, driver in self._drivers.items()}

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def _message(self, topic: str, payload: Any, headers: dict[str, str] | None) -> Message:
        return Message(
            topic=topic,
            payload=to_payload(payload),
            headers=dict(headers or {}),
            max_retries=self.config.retry.max_retries,
        )

    async def send_message(self, topic: str, payload: Any, headers: dict[str, str] | None = None) -> Message:
        message = self._message(topic, payload, headers)
        await self.publish(topic, message, timeout=CONVENIENCE_TIMEOUT)
        return message

    async def send_delayed_message(
        self, topic: str, payload: Any, delay: float, headers: dict[str, str] | None = None
    ) -> Message:
        message = self._message(topic, payload, headers)
        await self.publish_with_delay(topic, message, delay, timeout=CONVENIENCE_TIMEOUT)
        return message

    async def send_job(self, queue: str, handler: str, payload: Any = b"") -> Job:
        job = Job.create(queue, handler, payload)
        await self.enqueue_job(queue, job, timeout=CONVENIENCE_TIMEOUT)
        return job

    async def send_delayed_job(self, queue: str, handler: str, payload: Any, delay: float) -> Job:
        job = Job.create(queue, handler, payload).with_delay(delay)
        await self.enqueue_job(queue, job, timeout=CONVENIENCE_TIMEOUT)
        return job

    async def send_priority_job(self, queue: str, handler: str, payload: Any, priority: int) -> Job:
        job = Job.create(queue, handler, payload).with_priority(priority)
        await self.enqueue_job(queue, job, timeout=CONVENIENCE_TIMEOUT)
        return job

    async def start_worker(self, queue: str, handler: JobHandler) -> Subscription:
        return await self.process_jobs(queue, handler)

    async def listen_to_topic(self, topic: str, handler: MessageHandler) -> Subscription:
        return await self.subscribe(topic, handler)

    async def listen_to_topic_with_group(self, topic: str, group: str, handler: MessageHandler) -> Subscription:
        return await self.subscribe_with_group(topic, group, handler)


__all__ = ["BrokerManager", "DriverSwitcher"]
