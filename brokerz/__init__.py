"""
Brokerz - Unified message broker and job queue for asyncio

One publish/subscribe and job-queue API over RabbitMQ, Kafka and Redis
(plus an in-memory driver for tests), with:
- Delayed delivery on every backend
- Bounded retries with exponential back-off
- Consumer groups and fan-out
- Per-driver health monitoring
- Prometheus metrics and structured logging

Usage - through the manager:
    >>> from brokerz import BrokerManager, BrokerConfig
    >>>
    >>> async with BrokerManager(BrokerConfig(driver="redis")) as broker:
    ...     await broker.subscribe("orders", handle_order)
    ...     await broker.send_message("orders", {"order_id": "123"})
    ...     await broker.send_delayed_job("emails", "send_welcome", {"user": 42}, delay=60)

Usage - one driver directly:
    >>> from brokerz import create_driver
    >>>
    >>> driver = create_driver("memory")
    >>> await driver.connect()
    >>> await driver.publish_json("orders", {"order_id": "123"})
"""

from brokerz.core import (
    AlreadySubscribedError,
    BackendError,
    BroadcastError,
    BrokerClosedError,
    BrokerConfig,
    BrokerError,
    BrokerStats,
    ConnectionFailedError,
    DefaultUnavailableError,
    DriverNotConfiguredError,
    DriverNotSupportedError,
    InvalidConfigurationError,
    Job,
    KafkaConfig,
    MaxRetriesExceededError,
    Message,
    MessageTooLargeError,
    MirrorError,
    MissingDependencyError,
    NotConnectedError,
    QueueNotFoundError,
    RabbitMQConfig,
    RedisConfig,
    RetryPolicy,
    SerializationError,
    Subscription,
    TopicConfig,
    TopicInfo,
    TopicNotFoundError,
)
from brokerz.drivers import (
    BaseDriver,
    InMemoryDriver,
    MessageBroker,
    create_driver,
    get_available_drivers,
)
from brokerz.health import HealthCheckResult, HealthMonitor, HealthStatus
from brokerz.manager import BrokerManager, DriverSwitcher

__version__ = "0.1.0"

__all__ = [
    # Facade
    "BrokerManager",
    "DriverSwitcher",

    # Drivers
    "BaseDriver",
    "InMemoryDriver",
    "MessageBroker",
    "create_driver",
    "get_available_drivers",

    # Types
    "BrokerStats",
    "Job",
    "Message",
    "Subscription",
    "TopicConfig",
    "TopicInfo",

    # Configuration
    "BrokerConfig",
    "KafkaConfig",
    "RabbitMQConfig",
    "RedisConfig",
    "RetryPolicy",

    # Health
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",

    # Errors
    "AlreadySubscribedError",
    "BackendError",
    "BroadcastError",
    "BrokerClosedError",
    "BrokerError",
    "ConnectionFailedError",
    "DefaultUnavailableError",
    "DriverNotConfiguredError",
    "DriverNotSupportedError",
    "InvalidConfigurationError",
    "MaxRetriesExceededError",
    "MessageTooLargeError",
    "MirrorError",
    "MissingDependencyError",
    "NotConnectedError",
    "QueueNotFoundError",
    "SerializationError",
    "TopicNotFoundError",
]
