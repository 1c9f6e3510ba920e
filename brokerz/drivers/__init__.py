"""
Broker Drivers

Backend adapters behind the MessageBroker contract.

Available drivers:
    - InMemoryDriver ("memory"): in-process, for tests and development
    - RabbitMQDriver ("amqp"): RabbitMQ/AMQP (requires aio-pika)
    - KafkaDriver ("log"): Apache Kafka (requires aiokafka)
    - RedisDriver ("kv"): Redis pub/sub and lists (requires redis)

Factory:
    >>> from brokerz.drivers import create_driver
    >>> driver = create_driver("kafka", config)
"""

from brokerz.drivers.base import BaseDriver, MessageBroker
from brokerz.drivers.delay import DelayDispatcher, DelayStrategy, TimerDelayStrategy
from brokerz.drivers.factory import (
    DRIVER_ALIASES,
    create_driver,
    get_available_drivers,
    normalize_driver_name,
    print_available_drivers,
)
from brokerz.drivers.memory import InMemoryDriver
from brokerz.drivers.stats import StatsCollector


# Lazy imports for optional backends
def RabbitMQDriver(*args, **kwargs):
    """RabbitMQ driver (requires aio-pika)."""
    from brokerz.drivers.rabbitmq import RabbitMQDriver as _Impl
    return _Impl(*args, **kwargs)


def KafkaDriver(*args, **kwargs):
    """Kafka driver (requires aiokafka)."""
    from brokerz.drivers.kafka import KafkaDriver as _Impl
    return _Impl(*args, **kwargs)


def RedisDriver(*args, **kwargs):
    """Redis driver (requires redis)."""
    from brokerz.drivers.redis import RedisDriver as _Impl
    return _Impl(*args, **kwargs)


__all__ = [
    # Contract
    "MessageBroker",
    "BaseDriver",
    "StatsCollector",

    # Delayed delivery
    "DelayStrategy",
    "DelayDispatcher",
    "TimerDelayStrategy",

    # Implementations
    "InMemoryDriver",
    "KafkaDriver",
    "RabbitMQDriver",
    "RedisDriver",

    # Factory
    "DRIVER_ALIASES",
    "create_driver",
    "get_available_drivers",
    "normalize_driver_name",
    "print_available_drivers",
]
