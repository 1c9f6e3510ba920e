"""
Tests for BrokerManager.

Drivers are in-memory stand-ins installed under the canonical backend
names, so multi-driver behaviour can be exercised without services.
"""

from unittest.mock import AsyncMock

import pytest

from brokerz import BrokerManager, DriverSwitcher
from brokerz.core.config import BrokerConfig
from brokerz.core.env import EnvManager
from brokerz.core.exceptions import (
    BackendError,
    BroadcastError,
    BrokerClosedError,
    ConnectionFailedError,
    DefaultUnavailableError,
    DriverNotConfiguredError,
    DriverNotSupportedError,
    MirrorError,
)
from brokerz.core.retry import RetryPolicy
from brokerz.core.types import Job
from brokerz.drivers.memory import InMemoryDriver


class NamedMemoryDriver(InMemoryDriver):
    def __init__(self, name: str, **kwargs):
        self.name = name
        super().__init__(**kwargs)


class MemoryFactory:
    """Driver factory producing in-memory drivers; names in ``failing`` refuse to connect."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.created: dict[str, NamedMemoryDriver] = {}
        self.kwargs: dict[str, dict] = {}

    def __call__(self, name, config, **kwargs):
        if name in self.failing:
            raise ConnectionFailedError(f"{name} unreachable", driver=name)
        driver = NamedMemoryDriver(name, retry_policy=config.retry, **kwargs)
        self.created[name] = driver
        self.kwargs[name] = kwargs
        return driver


def make_manager(driver="redis", failing=(), **kwargs):
    factory = MemoryFactory(failing)
    config = BrokerConfig(driver=driver, retry=RetryPolicy.immediate(max_retries=2))
    return BrokerManager(config, driver_factory=factory, **kwargs), factory


def collector():
    received: list = []

    async def handler(item):
        received.append(item)

    return received, handler


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_installs_default(self):
        manager, factory = make_manager()
        await manager.connect()

        assert manager.default_name == "kv"
        assert manager.default_driver is factory.created["kv"]
        assert manager.default_driver.is_connected
        assert manager.available_drivers() == ["kv"]
        assert manager.health_check() == {"kv": True}

        await manager.close()

    @pytest.mark.asyncio
    async def test_real_factory_memory_driver(self, eventually):
        async with BrokerManager(BrokerConfig(driver="memory")) as manager:
            received, handler = collector()
            await manager.listen_to_topic("orders", handler)

            message = await manager.send_message("orders", {"order_id": "123"}, headers={"trace": "t"})
            await eventually(lambda: len(received) == 1)

        assert received[0].id == message.id
        assert received[0].unmarshal_payload() == {"order_id": "123"}
        assert received[0].headers == {"trace": "t"}
        assert manager.is_closed

    @pytest.mark.asyncio
    async def test_connect_validates_config(self):
        manager, _ = make_manager(driver="nats")
        with pytest.raises(DriverNotSupportedError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self):
        manager, _ = make_manager(failing={"kv"})
        with pytest.raises(ConnectionFailedError):
            await manager.connect()
        assert manager.default_driver is None

    @pytest.mark.asyncio
    async def test_operations_before_connect(self):
        manager, _ = make_manager()
        with pytest.raises(DefaultUnavailableError):
            await manager.publish_json("orders", {})

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_final(self):
        manager, factory = make_manager()
        await manager.connect()

        await manager.close()
        await manager.close()

        assert factory.created["kv"].is_closed
        assert manager._monitors["kv"].running is False
        with pytest.raises(BrokerClosedError):
            await manager.send_message("orders", "x")
        with pytest.raises(BrokerClosedError):
            manager.via("kv")
        with pytest.raises(BrokerClosedError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_close_closes_all_and_raises_last_error(self):
        manager, factory = make_manager()
        await manager.connect()
        await manager.set_default("log")
        factory.created["kv"]._close = AsyncMock(side_effect=RuntimeError("stuck"))

        with pytest.raises(BackendError, match="stuck"):
            await manager.close()

        assert factory.created["log"].is_closed
        assert manager.is_closed

    @pytest.mark.asyncio
    async def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MESSAGE_BROKER_DRIVER", "memory")
        monkeypatch.setenv("MESSAGE_BROKER_MAX_RETRIES", "5")

        manager = BrokerManager.from_env(EnvManager(auto_load=False), health_interval=1.0)

        assert manager.config.driver == "memory"
        assert manager.config.retry.max_retries == 5
        assert manager.health_interval == 1.0

    @pytest.mark.asyncio
    async def test_metrics_passed_to_drivers(self, fresh_metrics):
        manager, factory = make_manager(metrics=fresh_metrics)
        await manager.connect()

        assert factory.kwargs["kv"] == {"metrics": fresh_metrics}
        assert manager._monitors["kv"].metrics is fresh_metrics
        await manager.close()


class TestDriverSelection:
    @pytest.mark.asyncio
    async def test_set_default_installs_and_switches(self):
        manager, factory = make_manager()
        await manager.connect()

        await manager.set_default("kafka")

        assert manager.default_name == "log"
        assert manager.available_drivers() == ["kv", "log"]
        await manager.send_message("orders", "x")
        assert len(factory.created["log"].get_messages("orders")) == 1
        assert factory.created["kv"].get_messages("orders") == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_failed_switch_keeps_previous_default(self):
        manager, _ = make_manager(failing={"amqp"})
        await manager.connect()

        with pytest.raises(DriverNotConfiguredError) as exc_info:
            await manager.set_default("rabbitmq")

        assert "unreachable" in exc_info.value.reason
        assert manager.default_name == "kv"
        assert manager.available_drivers() == ["kv"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_unknown_default(self):
        manager, _ = make_manager()
        await manager.connect()

        with pytest.raises(DriverNotConfiguredError):
            await manager.set_default("nats")
        assert manager.default_name == "kv"
        await manager.close()

    @pytest.mark.asyncio
    async def test_via_targets_named_driver_once(self):
        manager, factory = make_manager()
        await manager.connect()
        await manager.set_default("log")
        await manager.set_default("kv")

        switcher = manager.via("kafka")
        await switcher.publish_json("audit", {"event": "created"})

        assert isinstance(switcher, DriverSwitcher)
        assert len(factory.created["log"].get_messages("audit")) == 1
        assert factory.created["kv"].get_messages("audit") == []
        assert manager.default_name == "kv"
        assert manager.using("log").name == "log"
        await manager.close()

    @pytest.mark.asyncio
    async def test_via_unknown_driver(self):
        manager, _ = make_manager()
        await manager.connect()

        with pytest.raises(DriverNotConfiguredError):
            manager.via("amqp")
        with pytest.raises(DriverNotConfiguredError):
            manager.using("nats")
        await manager.close()

    @pytest.mark.asyncio
    async def test_driver_lookup_by_alias(self):
        manager, factory = make_manager()
        await manager.connect()

        assert manager.driver("redis") is factory.created["kv"]
        assert manager.driver("kafka") is None
        assert manager.driver("nats") is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_closed_default_is_unavailable(self):
        manager, factory = make_manager()
        await manager.connect()
        await factory.created["kv"].close()

        with pytest.raises(DefaultUnavailableError):
            await manager.send_message("orders", "x")
        await manager.close()


class TestCrossDriver:
    @pytest.mark.asyncio
    async def test_broadcast(self):
        manager, factory = make_manager()
        await manager.connect()

        messages = await manager.broadcast(["t1", "t2", "t3"], {"n": 1})

        assert [m.topic for m in messages] == ["t1", "t2", "t3"]
        assert len({m.id for m in messages}) == 3
        assert {m.payload for m in messages} == {b'{"n":1}'}
        assert all(m.max_retries == 2 for m in messages)
        for topic in ("t1", "t2", "t3"):
            assert len(factory.created["kv"].get_messages(topic)) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_broadcast_partial_failure(self):
        manager, factory = make_manager()
        await manager.connect()
        driver = factory.created["kv"]
        driver.publish = AsyncMock(side_effect=[None, RuntimeError("down"), None])

        with pytest.raises(BroadcastError) as exc_info:
            await manager.broadcast(["t1", "t2", "t3"], "x")

        assert exc_info.value.topic == "t2"
        assert exc_info.value.published == ["t1"]
        assert driver.publish.await_count == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_mirror(self):
        manager, factory = make_manager()
        await manager.connect()
        await manager.set_default("log")

        messages = await manager.mirror(["kv", "kafka"], "orders", "x")

        assert len(messages) == 2
        assert len(factory.created["kv"].get_messages("orders")) == 1
        assert len(factory.created["log"].get_messages("orders")) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_mirror_unknown_driver(self):
        manager, factory = make_manager()
        await manager.connect()

        with pytest.raises(MirrorError) as exc_info:
            await manager.mirror(["kv", "amqp"], "orders", "x")

        assert exc_info.value.driver == "amqp"
        assert exc_info.value.published == ["kv"]
        assert isinstance(exc_info.value.__cause__, DriverNotConfiguredError)
        await manager.close()

    @pytest.mark.asyncio
    async def test_mirror_backend_failure(self):
        manager, factory = make_manager()
        await manager.connect()
        factory.created["kv"].simulate_outage()

        with pytest.raises(MirrorError) as exc_info:
            await manager.mirror(["kv"], "orders", "x")

        assert exc_info.value.published == []
        await manager.close()


class TestHealth:
    @pytest.mark.asyncio
    async def test_outage_detected_within_two_intervals(self, eventually):
        manager, factory = make_manager(health_interval=0.05)
        await manager.connect()

        factory.created["kv"].simulate_outage()
        await eventually(lambda: manager.is_healthy("kv") is False, timeout=0.1 + 0.5)

        assert manager.health_check() == {"kv": False}
        assert manager.health_results()["kv"].is_healthy is False

        factory.created["kv"].restore()
        await eventually(lambda: manager.is_healthy("redis"))
        await manager.close()

    @pytest.mark.asyncio
    async def test_refresh_health(self):
        manager, factory = make_manager(health_interval=60.0)
        await manager.connect()
        factory.created["kv"].simulate_outage()

        assert manager.health_check() == {"kv": True}
        assert await manager.refresh_health() == {"kv": False}
        await manager.close()

    @pytest.mark.asyncio
    async def test_unknown_driver_is_not_healthy(self):
        manager, _ = make_manager()
        await manager.connect()

        assert manager.is_healthy("amqp") is False
        assert manager.is_healthy("nats") is False
        await manager.close()


class TestConvenience:
    @pytest.mark.asyncio
    async def test_jobs(self, eventually):
        manager, _ = make_manager()
        await manager.connect()
        handled, handler = collector()

        await manager.start_worker("emails", handler)
        job = await manager.send_job("emails", "send_welcome", {"user": 1})
        await eventually(lambda: len(handled) == 1)

        assert isinstance(job, Job)
        assert handled[0].id == job.id
        assert handled[0].handler == "send_welcome"
        assert handled[0].unmarshal_payload() == {"user": 1}
        await manager.close()

    @pytest.mark.asyncio
    async def test_priority_and_delayed_jobs(self):
        manager, _ = make_manager()
        await manager.connect()

        urgent = await manager.send_priority_job("emails", "send", "x", priority=7)
        later = await manager.send_delayed_job("emails", "send", "x", delay=30)

        assert urgent.priority == 7
        assert later.delay == 30
        stats = await manager.get_stats()
        assert stats.jobs_enqueued == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_delayed_message(self, eventually):
        manager, factory = make_manager()
        await manager.connect()
        received, handler = collector()

        await manager.listen_to_topic_with_group("orders", "billing", handler)
        message = await manager.send_delayed_message("orders", "x", delay=0.1)

        assert received == []
        await eventually(lambda: len(received) == 1)
        assert received[0].id == message.id
        await manager.close()

    @pytest.mark.asyncio
    async def test_get_all_stats(self):
        manager, _ = make_manager()
        await manager.connect()
        await manager.set_default("log")
        await manager.send_message("orders", "x")

        stats = await manager.get_all_stats()

        assert set(stats) == {"kv", "log"}
        assert stats["log"].messages_published == 1
        assert stats["kv"].messages_published == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_topic_admin_delegates(self):
        manager, _ = make_manager()
        await manager.connect()

        await manager.create_topic("orders")
        info = await manager.get_topic_info("orders")
        await manager.ping()

        assert info.name == "orders"
        await manager.delete_topic("orders")
        await manager.close()
