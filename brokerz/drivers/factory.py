"""
Driver Factory - create driver instances by name.

Canonical names are ``amqp``, ``log``, ``kv`` and ``memory``; the backend
names (``rabbitmq``/``rabbit``, ``kafka``, ``redis``) are accepted as
aliases.

Usage:
    >>> from brokerz.drivers.factory import create_driver, get_available_drivers
    >>> print(get_available_drivers())
    ['memory', 'amqp', 'log', 'kv']
    >>> driver = create_driver("redis", BrokerConfig())
    >>> await driver.connect()
"""

from typing import Any

from brokerz.core.config import BrokerConfig
from brokerz.core.exceptions import DriverNotSupportedError, MissingDependencyError
from brokerz.drivers.base import BaseDriver
from brokerz.drivers.memory import InMemoryDriver

DRIVER_ALIASES = {
    "amqp": "amqp",
    "rabbitmq": "amqp",
    "rabbit": "amqp",
    "log": "log",
    "kafka": "log",
    "kv": "kv",
    "redis": "kv",
    "memory": "memory",
}


def normalize_driver_name(name: str) -> str:
    """
    Map a driver name or alias to its canonical name.

    Raises:
        DriverNotSupportedError: If the name is unknown
    """
    key = (name or "").lower().strip()
    if key not in DRIVER_ALIASES:
        raise DriverNotSupportedError(name, sorted(set(DRIVER_ALIASES.values())))
    return DRIVER_ALIASES[key]


def _check_driver_availability(module_path: str, available_attr: str) -> bool:
    """Check if a driver module is importable and its client library installed."""
    try:
        module = __import__(module_path, fromlist=[available_attr])
        return getattr(module, available_attr, False)
    except ImportError:
        return False


_DRIVER_CHECKS = [
    ("brokerz.drivers.rabbitmq", "RABBITMQ_AVAILABLE", "amqp", "RabbitMQ/AMQP", "pip install aio-pika"),
    ("brokerz.drivers.kafka", "KAFKA_AVAILABLE", "log", "Apache Kafka", "pip install aiokafka"),
    ("brokerz.drivers.redis", "REDIS_AVAILABLE", "kv", "Redis pub/sub", "pip install redis"),
]


def get_available_drivers() -> list[str]:
    """
    Get list of usable driver names.

    Returns:
        Canonical names of drivers whose client library is installed
    """
    available = ["memory"]
    for module_path, attr, name, _, _ in _DRIVER_CHECKS:
        if _check_driver_availability(module_path, attr):
            available.append(name)
    return available


def print_available_drivers() -> None:
    """Print available drivers with installation instructions."""
    print("\n=== Available Broker Drivers ===\n")
    print(f"  ✓ {'memory':<8} - In-memory (for testing)")
    for module_path, attr, name, desc, install in _DRIVER_CHECKS:
        if _check_driver_availability(module_path, attr):
            print(f"  ✓ {name:<8} - {desc}")
        else:
            print(f"  ✗ {name:<8} - {desc} (install: {install})")
    print()


def _create_amqp_driver(config: BrokerConfig, kwargs: dict) -> BaseDriver:
    from brokerz.drivers.rabbitmq import RABBITMQ_AVAILABLE, RabbitMQDriver

    if not RABBITMQ_AVAILABLE:
        msg = "aio-pika"
        raise MissingDependencyError(msg, "RabbitMQ broker driver")
    return RabbitMQDriver(config.section_for("amqp"), **kwargs)


def _create_log_driver(config: BrokerConfig, kwargs: dict) -> BaseDriver:
    from brokerz.drivers.kafka import KAFKA_AVAILABLE, KafkaDriver

    if not KAFKA_AVAILABLE:
        msg = "aiokafka"
        raise MissingDependencyError(msg, "Kafka broker driver")
    return KafkaDriver(config.section_for("log"), **kwargs)


def _create_kv_driver(config: BrokerConfig, kwargs: dict) -> BaseDriver:
    from brokerz.drivers.redis import REDIS_AVAILABLE, RedisDriver

    if not REDIS_AVAILABLE:
        msg = "redis"
        raise MissingDependencyError(msg, "Redis broker driver")
    return RedisDriver(config.section_for("kv"), **kwargs)


# Driver registry: canonical name -> (factory_function, dependency_name)
_DRIVER_REGISTRY = {
    "memory": (lambda _config, kwargs: InMemoryDriver(**kwargs), None),
    "amqp": (_create_amqp_driver, "aio-pika"),
    "log": (_create_log_driver, "aiokafka"),
    "kv": (_create_kv_driver, "redis"),
}


def create_driver(name: str, config: BrokerConfig | None = None, **kwargs: Any) -> BaseDriver:
    """
    Create a (not yet connected) driver.

    Args:
        name: Driver name or alias ('amqp', 'kafka', 'redis', 'memory', ...)
        config: Broker configuration; the driver's block is taken from it
        **kwargs: Passed to the driver (codec, metrics, clock, retry_policy)

    Raises:
        DriverNotSupportedError: If the name is unknown
        InvalidConfigurationError: If the driver's configuration block is missing
        MissingDependencyError: If the driver's client library is not installed

    Examples:
        >>> driver = create_driver("memory")
        >>> driver = create_driver("kafka", BrokerConfig(kafka=KafkaConfig(brokers=["kafka:9092"])))
    """
    canonical = normalize_driver_name(name)
    config = config or BrokerConfig()
    kwargs.setdefault("retry_policy", config.retry)

    factory, dependency = _DRIVER_REGISTRY[canonical]
    try:
        return factory(config, kwargs)
    except ImportError as e:
        if dependency:
            raise MissingDependencyError(dependency, f"{canonical} broker driver") from e
        raise  # pragma: no cover


__all__ = [
    "DRIVER_ALIASES",
    "create_driver",
    "get_available_drivers",
    "normalize_driver_name",
    "print_available_drivers",
]
