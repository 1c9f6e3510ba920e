"""
Pytest configuration and shared fixtures for broker tests.

Container fixtures are session-scoped and skip gracefully when Docker or
testcontainers is unavailable.
"""

import asyncio
import uuid

import pytest

from brokerz.core.retry import RetryPolicy
from brokerz.monitoring.prometheus import PrometheusMetrics

# ============================================
# HELPERS
# ============================================


async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = f"condition not met within {timeout}s"
            raise AssertionError(msg)
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """
    Poll a predicate until it holds.

    Usage:
        async def test_something(eventually):
            await eventually(lambda: len(received) == 3)
    """
    return _eventually


@pytest.fixture
def immediate_retry():
    """Retry policy without back-off, so retries happen right away."""
    return RetryPolicy.immediate(max_retries=3)


@pytest.fixture
def fresh_metrics():
    """PrometheusMetrics on a private registry."""
    from prometheus_client import CollectorRegistry

    return PrometheusMetrics(prefix=f"test_brokerz_{uuid.uuid4().hex[:8]}", registry=CollectorRegistry())


@pytest.fixture
def unique_topic():
    return f"topic-{uuid.uuid4().hex[:8]}"


# ============================================
# SESSION-SCOPED CONTAINER FIXTURES
# ============================================

try:
    from testcontainers.kafka import KafkaContainer
    from testcontainers.rabbitmq import RabbitMqContainer
    from testcontainers.redis import RedisContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    TESTCONTAINERS_AVAILABLE = False
    KafkaContainer = None
    RabbitMqContainer = None
    RedisContainer = None


@pytest.fixture(scope="session")
def redis_container():
    """
    Session-scoped Redis container.

    Gracefully skips if the container fails to start (e.g., Docker issues).
    """
    if not TESTCONTAINERS_AVAILABLE:
        pytest.skip("testcontainers not available")

    try:
        with RedisContainer("redis:7-alpine") as container:
            yield container
    except Exception as e:
        pytest.skip(f"Redis container failed to start: {e}")


@pytest.fixture(scope="session")
def rabbitmq_container():
    """Session-scoped RabbitMQ container (no delayed-message plugin)."""
    if not TESTCONTAINERS_AVAILABLE:
        pytest.skip("testcontainers not available")

    try:
        with RabbitMqContainer("rabbitmq:3.12-alpine") as container:
            yield container
    except Exception as e:
        pytest.skip(f"RabbitMQ container failed to start: {e}")


@pytest.fixture(scope="session")
def kafka_container():
    """Session-scoped Kafka container."""
    if not TESTCONTAINERS_AVAILABLE:
        pytest.skip("testcontainers not available")

    try:
        with KafkaContainer("confluentinc/cp-kafka:7.6.0") as container:
            yield container
    except Exception as e:
        pytest.skip(f"Kafka container failed to start: {e}")


@pytest.fixture(scope="session")
def redis_config(redis_container):
    """RedisConfig pointing at the session container."""
    from brokerz.core.config import RedisConfig

    return RedisConfig(
        host=redis_container.get_container_host_ip(),
        port=int(redis_container.get_exposed_port(6379)),
        db=0,
    )


@pytest.fixture(scope="session")
def rabbitmq_config(rabbitmq_container):
    """RabbitMQConfig pointing at the session container."""
    from brokerz.core.config import RabbitMQConfig

    return RabbitMQConfig(
        host=rabbitmq_container.get_container_host_ip(),
        port=int(rabbitmq_container.get_exposed_port(5672)),
        username="guest",
        password="guest",
    )


@pytest.fixture(scope="session")
def kafka_config(kafka_container):
    """KafkaConfig pointing at the session container."""
    from brokerz.core.config import KafkaConfig

    return KafkaConfig(
        brokers=[kafka_container.get_bootstrap_server()],
        group_id=f"brokerz-test-{uuid.uuid4().hex[:6]}",
        compression="none",
        initial_offset="oldest",
    )
