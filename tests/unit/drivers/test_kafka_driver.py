"""
Unit tests for KafkaDriver with mocked aiokafka clients.

Covers client options, record translation, the satellite-topic delay
strategy and its relay, manual offset commits, jobs and administration.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka import TopicPartition
from aiokafka.errors import CommitFailedError, KafkaConnectionError, KafkaError, MessageSizeTooLargeError

from brokerz.core.config import KafkaConfig, SASLConfig, TLSConfig
from brokerz.core.exceptions import (
    ConnectionFailedError,
    MessageTooLargeError,
    NotConnectedError,
    SerializationError,
    TopicNotFoundError,
)
from brokerz.core.types import Job, Message, TopicConfig
from brokerz.drivers.kafka import KafkaDriver, SatelliteRelay, satellite_topic


class FakeConsumer:
    """Async-iterable consumer: yields records, then idles until cancelled."""

    def __init__(self, records=(), fail_with=None, start_error=None, commit_error=None):
        self.records = list(records)
        self.fail_with = fail_with
        self.start_error = start_error
        self.commit_error = commit_error
        self.commits = []
        self.started = False
        self.stopped = False

    async def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def stop(self):
        self.stopped = True

    async def commit(self, offsets):
        if self.commit_error is not None:
            error, self.commit_error = self.commit_error, None
            raise error
        self.commits.append(offsets)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        if self.records:
            return self.records.pop(0)
        await asyncio.Event().wait()


def make_record(driver, message, topic="orders", partition=0, offset=0):
    return SimpleNamespace(
        topic=topic,
        partition=partition,
        offset=offset,
        key=message.id.encode(),
        value=message.payload,
        headers=driver.record_headers(message),
        timestamp=1700000000000,
    )


def connected_driver(config=None, **kwargs):
    driver = KafkaDriver(config or KafkaConfig(), **kwargs)
    driver._producer = AsyncMock()
    driver._admin = AsyncMock()
    driver._connected = True
    return driver


class TestClientOptions:
    def test_producer_acks_and_linger(self):
        driver = KafkaDriver(KafkaConfig(required_acks=-1, flush_frequency=0.25, compression="gzip"))
        options = driver.producer_options()

        assert options["acks"] == "all"
        assert options["linger_ms"] == 250
        assert options["compression_type"] == "gzip"
        assert options["bootstrap_servers"] == "localhost:9092"

    def test_missing_compression_library(self, caplog):
        driver = KafkaDriver(KafkaConfig(compression="snappy"))
        with patch("brokerz.drivers.kafka.kafka_codec.has_snappy", return_value=False):
            options = driver.producer_options()

        assert "compression_type" not in options
        assert "snappy" in caplog.text

    def test_no_compression(self):
        options = KafkaDriver(KafkaConfig(compression="none")).producer_options()
        assert "compression_type" not in options

    def test_consumer_offsets(self):
        assert KafkaDriver(KafkaConfig(initial_offset="oldest")).consumer_options("g")["auto_offset_reset"] == "earliest"
        options = KafkaDriver(KafkaConfig()).consumer_options("billing")
        assert options["auto_offset_reset"] == "latest"
        assert options["group_id"] == "billing"
        assert options["enable_auto_commit"] is False
        assert options["session_timeout_ms"] == 30000
        assert KafkaDriver().consumer_options("g", offset_reset="earliest")["auto_offset_reset"] == "earliest"

    def test_ignored_settings_do_not_reach_the_clients(self):
        config = KafkaConfig(
            version="0.10.2", return_successes=False, enable_auto_commit=True, auto_commit_interval=5.0
        )
        driver = KafkaDriver(config)
        producer, consumer = driver.producer_options(), driver.consumer_options("g")

        assert consumer["enable_auto_commit"] is False
        assert "auto_commit_interval_ms" not in consumer
        for options in (producer, consumer):
            assert "api_version" not in options

    def test_sasl_plaintext(self):
        config = KafkaConfig(sasl=SASLConfig(enabled=True, mechanism="SCRAM-SHA-256", username="u", password="p"))
        options = KafkaDriver(config)._security_options()

        assert options["security_protocol"] == "SASL_PLAINTEXT"
        assert options["sasl_mechanism"] == "SCRAM-SHA-256"
        assert options["sasl_plain_username"] == "u"

    def test_tls_with_sasl(self):
        context = MagicMock()
        config = KafkaConfig(
            tls=TLSConfig(enabled=True, ca_file="/ca.pem", insecure_skip_verify=True),
            sasl=SASLConfig(enabled=True),
        )
        with patch("brokerz.drivers.kafka.create_ssl_context", return_value=context) as factory:
            options = KafkaDriver(config)._security_options()

        factory.assert_called_once_with(cafile="/ca.pem", certfile=None, keyfile=None)
        assert options["ssl_context"] is context
        assert options["security_protocol"] == "SASL_SSL"
        assert context.check_hostname is False


class TestRecords:
    def test_round_trip(self):
        driver = KafkaDriver()
        message = Message(
            topic="orders",
            payload=b"body",
            headers={"trace_id": "abc"},
            metadata={"attempt": 2, "tags": ["a"]},
            retry_count=1,
            max_retries=5,
        )

        decoded = driver.decode_record(make_record(driver, message))

        assert decoded.id == message.id
        assert decoded.topic == "orders"
        assert decoded.payload == b"body"
        assert decoded.headers == {"trace_id": "abc"}
        assert decoded.metadata == {"attempt": 2, "tags": ["a"]}
        assert decoded.retry_count == 1
        assert decoded.max_retries == 5
        assert int(decoded.timestamp.timestamp()) == int(message.timestamp.timestamp())

    def test_foreign_record_falls_back_to_key_and_timestamp(self):
        driver = KafkaDriver()
        record = SimpleNamespace(
            topic="orders", partition=0, offset=0, key=b"k-1", value=None, headers=[], timestamp=1700000000000
        )

        decoded = driver.decode_record(record)

        assert decoded.id == "k-1"
        assert decoded.payload == b""
        assert decoded.timestamp.timestamp() == 1700000000

    def test_invalid_counters(self):
        driver = KafkaDriver()
        record = SimpleNamespace(
            topic="orders", partition=0, offset=0, key=None, value=b"", headers=[("retry_count", b"x")], timestamp=0
        )
        with pytest.raises(SerializationError):
            driver.decode_record(record)


class TestSend:
    @pytest.mark.asyncio
    async def test_publish_produces_record(self):
        driver = connected_driver()
        message = Message(topic="orders", payload=b"x")

        await driver.publish("orders", message)

        driver._producer.send_and_wait.assert_awaited_once()
        args, kwargs = driver._producer.send_and_wait.await_args
        assert args == ("orders",)
        assert kwargs["value"] == b"x"
        assert kwargs["key"] == message.id.encode()
        assert ("message_id", message.id.encode()) in kwargs["headers"]

    @pytest.mark.asyncio
    async def test_too_large(self):
        driver = connected_driver()
        driver._producer.send_and_wait.side_effect = MessageSizeTooLargeError()

        with pytest.raises(MessageTooLargeError) as exc_info:
            await driver.publish("orders", Message(topic="orders", payload=b"x" * 10))
        assert exc_info.value.details["size"] == 10

    @pytest.mark.asyncio
    async def test_send_without_producer(self):
        driver = KafkaDriver()
        with pytest.raises(NotConnectedError):
            await driver.send("orders", Message(topic="orders"))


class TestSatelliteTopicStrategy:
    @pytest.mark.asyncio
    async def test_parks_with_metadata(self):
        driver = connected_driver(clock=lambda: 1000.0)
        driver.send = AsyncMock()
        driver.ensure_relay = AsyncMock()
        message = Message(topic="orders", metadata={"source": "api"})

        await driver.publish_with_delay("orders", message, 90)

        topic, parked = driver.send.await_args.args
        assert topic == "orders.delayed"
        assert parked.id == message.id
        assert parked.metadata == {"source": "api", "delayed_until": 1090, "original_delay": "1m30s"}
        assert message.metadata == {"source": "api"}
        driver.ensure_relay.assert_awaited_once_with("orders")

    def test_satellite_topic_name(self):
        assert satellite_topic("orders") == "orders.delayed"


class TestSatelliteRelay:
    def _parked(self, driver, due, offset):
        message = Message(topic="orders", metadata={"delayed_until": due, "original_delay": "1s"})
        return message, make_record(driver, message, topic="orders.delayed", offset=offset)

    @pytest.mark.asyncio
    async def test_due_record_released_and_committed(self):
        driver = connected_driver(clock=lambda: 1000.95)
        driver.send = AsyncMock()
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer()
        message, record = self._parked(driver, 1000, offset=3)

        await relay._accept(record)

        topic, released = driver.send.await_args.args
        assert topic == "orders"
        assert released.id == message.id
        assert "delayed_until" not in released.metadata
        assert "original_delay" not in released.metadata
        assert relay._consumer.commits == [{TopicPartition("orders.delayed", 0): 4}]

    @pytest.mark.asyncio
    async def test_commit_never_passes_parked_record(self, eventually):
        driver = connected_driver(clock=lambda: 1000.95)
        driver.send = AsyncMock()
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer()
        tp = TopicPartition("orders.delayed", 0)
        later, later_record = self._parked(driver, 1001, offset=5)
        _, due_record = self._parked(driver, 1000, offset=6)

        await relay._accept(later_record)
        await relay._accept(due_record)

        assert relay._consumer.commits == [{tp: 5}]

        await eventually(lambda: len(relay._consumer.commits) == 2)
        assert relay._consumer.commits[1] == {tp: 7}
        assert driver.send.await_args.args[1].id == later.id

    @pytest.mark.asyncio
    async def test_release_keeps_retrying_until_sent(self, caplog):
        driver = connected_driver(clock=lambda: 1000.0)
        driver.send = AsyncMock(side_effect=[KafkaError("down")] * 4 + [None])
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer()
        _, record = self._parked(driver, 999, offset=0)

        with patch("brokerz.drivers.kafka.RESTART_BACKOFF", 0):
            await relay._accept(record)

        assert driver.send.await_count == 5
        assert relay._pending == {TopicPartition("orders.delayed", 0): set()}
        assert relay._consumer.commits == [{TopicPartition("orders.delayed", 0): 1}]
        assert "still failing" in caplog.text

    @pytest.mark.asyncio
    async def test_release_stops_when_cancelled(self):
        driver = connected_driver(clock=lambda: 1000.0)
        driver.send = AsyncMock(side_effect=KafkaError("down"))
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer()
        _, record = self._parked(driver, 999, offset=0)

        with patch("brokerz.drivers.kafka.RESTART_BACKOFF", 0.01):
            task = asyncio.create_task(relay._accept(record))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert driver.send.await_count >= 2
        assert relay._consumer.commits == []

    @pytest.mark.asyncio
    async def test_failed_commit_is_logged_and_retried_later(self, caplog):
        driver = connected_driver(clock=lambda: 1000.0)
        driver.send = AsyncMock()
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer(commit_error=CommitFailedError())
        tp = TopicPartition("orders.delayed", 0)
        _, first = self._parked(driver, 999, offset=0)
        _, second = self._parked(driver, 999, offset=1)

        await relay._accept(first)
        assert relay._consumer.commits == []
        assert "Committing orders.delayed offset 1 failed" in caplog.text

        await relay._accept(second)
        assert relay._consumer.commits == [{tp: 2}]

    @pytest.mark.asyncio
    async def test_undecodable_record_skipped(self):
        driver = connected_driver()
        relay = SatelliteRelay(driver, "orders")
        relay._consumer = FakeConsumer()
        record = SimpleNamespace(
            topic="orders.delayed", partition=1, offset=8, key=None, value=b"", headers=[("retry_count", b"x")],
            timestamp=0,
        )

        await relay._accept(record)

        assert relay._consumer.commits == [{TopicPartition("orders.delayed", 1): 9}]

    @pytest.mark.asyncio
    async def test_ensure_relay_starts_once(self):
        driver = connected_driver()
        consumer = FakeConsumer()
        driver.new_consumer = MagicMock(return_value=consumer)

        await driver.ensure_relay("orders")
        await driver.ensure_relay("orders")

        driver.new_consumer.assert_called_once_with(
            "orders.delayed", "go-template-consumer-group.delayed", offset_reset="earliest"
        )
        assert consumer.started

        await driver.close()
        assert consumer.stopped


class TestConsume:
    @pytest.mark.asyncio
    async def test_commits_after_each_record(self, eventually):
        driver = connected_driver()
        driver.ensure_relay = AsyncMock()
        messages = [Message(topic="orders", payload=b"1"), Message(topic="orders", payload=b"2")]
        consumer = FakeConsumer([make_record(driver, m, offset=i) for i, m in enumerate(messages)])
        driver.new_consumer = MagicMock(return_value=consumer)
        received = []

        async def handler(message):
            received.append(message.payload)

        await driver.subscribe("orders", handler)
        await eventually(lambda: len(consumer.commits) == 2)

        driver.new_consumer.assert_called_once_with("orders", "go-template-consumer-group")
        driver.ensure_relay.assert_awaited_once_with("orders")
        assert received == [b"1", b"2"]
        tp = TopicPartition("orders", 0)
        assert consumer.commits == [{tp: 1}, {tp: 2}]

        await driver.close()
        assert consumer.stopped

    @pytest.mark.asyncio
    async def test_group_subscription_uses_group_id(self):
        driver = connected_driver()
        driver.ensure_relay = AsyncMock()
        driver.new_consumer = MagicMock(return_value=FakeConsumer())

        async def handler(message):
            pass

        subscription = await driver.subscribe_with_group("orders", "billing", handler)

        driver.new_consumer.assert_called_once_with("orders", "billing")
        assert subscription.group == "billing"
        await driver.close()

    @pytest.mark.asyncio
    async def test_restarts_after_kafka_error(self, eventually):
        driver = connected_driver()
        driver.ensure_relay = AsyncMock()
        message = Message(topic="orders")
        broken = FakeConsumer(fail_with=KafkaError("rebalance failed"))
        healthy = FakeConsumer([make_record(driver, message)])
        driver.new_consumer = MagicMock(side_effect=[broken, healthy])
        received = []

        async def handler(msg):
            received.append(msg.id)

        with patch("brokerz.drivers.kafka.RESTART_BACKOFF", 0):
            await driver.subscribe("orders", handler)
            await eventually(lambda: received == [message.id])

        assert broken.stopped
        assert healthy.started
        await driver.close()

    @pytest.mark.asyncio
    async def test_restart_survives_consumer_that_fails_to_start(self, eventually):
        driver = connected_driver()
        driver.ensure_relay = AsyncMock()
        message = Message(topic="orders")
        broken = FakeConsumer(fail_with=KafkaError("session lost"))
        unreachable = FakeConsumer(start_error=KafkaConnectionError("broker down"))
        healthy = FakeConsumer([make_record(driver, message)])
        driver.new_consumer = MagicMock(side_effect=[broken, unreachable, healthy])
        received = []

        async def handler(msg):
            received.append(msg.id)

        with patch("brokerz.drivers.kafka.RESTART_BACKOFF", 0):
            subscription = await driver.subscribe("orders", handler)
            await eventually(lambda: received == [message.id])

        assert not subscription.done
        assert unreachable.stopped
        assert healthy.commits == [{TopicPartition("orders", 0): 1}]
        await driver.close()
        assert healthy.stopped

    @pytest.mark.asyncio
    async def test_failed_handler_republishes_then_commits(self, eventually, immediate_retry):
        driver = connected_driver(retry_policy=immediate_retry)
        driver.ensure_relay = AsyncMock()
        message = Message(topic="orders", max_retries=1)
        consumer = FakeConsumer([make_record(driver, message)])
        driver.new_consumer = MagicMock(return_value=consumer)

        async def failing(msg):
            raise RuntimeError("boom")

        await driver.subscribe("orders", failing)
        await eventually(lambda: len(consumer.commits) == 1)

        kwargs = driver._producer.send_and_wait.await_args.kwargs
        assert ("retry_count", b"1") in kwargs["headers"]
        await driver.close()


class TestJobs:
    @pytest.mark.asyncio
    async def test_enqueue_sends_job_envelope(self):
        driver = connected_driver()
        job = Job(queue="emails", handler="send")

        await driver.enqueue_job("emails", job)

        args, kwargs = driver._producer.send_and_wait.await_args
        assert args == ("emails",)
        assert driver.codec.decode_job(kwargs["value"]).id == job.id
        assert ("job_handler", b"send") in kwargs["headers"]

    @pytest.mark.asyncio
    async def test_delayed_job_goes_through_satellite(self):
        driver = connected_driver()
        driver.delay_strategy.schedule = AsyncMock()

        await driver.enqueue_job("emails", Job(queue="emails", handler="send", delay=30))

        topic, message, delay = driver.delay_strategy.schedule.await_args.args
        assert topic == "emails"
        assert delay == 30
        driver._producer.send_and_wait.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_worker_handles_jobs(self, eventually):
        driver = connected_driver()
        driver.ensure_relay = AsyncMock()
        job = Job(queue="emails", handler="send", payload=b"hi")
        record = SimpleNamespace(
            topic="emails", partition=0, offset=0, key=None, value=driver.codec.encode_job(job), headers=[],
            timestamp=0,
        )
        consumer = FakeConsumer([record])
        driver.new_consumer = MagicMock(return_value=consumer)
        handled = []

        async def handler(claimed):
            handled.append(claimed)

        await driver.process_jobs("emails", handler)
        await eventually(lambda: len(consumer.commits) == 1)

        assert handled[0].id == job.id
        assert handled[0].attempts == 1
        await driver.close()


class TestAdministration:
    @pytest.mark.asyncio
    async def test_create_topic(self):
        driver = connected_driver()
        driver._admin.list_topics.return_value = set()

        await driver.create_topic("orders", TopicConfig(partitions=3, replication_factor=1))

        (topics,), _ = driver._admin.create_topics.await_args
        assert topics[0].name == "orders"
        assert topics[0].num_partitions == 3

    @pytest.mark.asyncio
    async def test_create_existing_topic_is_noop(self):
        driver = connected_driver()
        driver._admin.list_topics.return_value = {"orders"}

        await driver.create_topic("orders")

        driver._admin.create_topics.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_topic_info(self):
        driver = connected_driver()
        driver._admin.describe_topics.return_value = [
            {
                "topic": "orders",
                "error_code": 0,
                "partitions": [{"replicas": [1, 2]}, {"replicas": [1, 2]}],
            }
        ]

        info = await driver.get_topic_info("orders")

        assert info.partitions == 2
        assert info.replication_factor == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "described",
        [[], [{"topic": "orders", "error_code": 3, "partitions": []}], [{"topic": "other", "partitions": [{}]}]],
    )
    async def test_topic_not_found(self, described):
        driver = connected_driver()
        driver._admin.describe_topics.return_value = described

        with pytest.raises(TopicNotFoundError):
            await driver.get_topic_info("orders")

    @pytest.mark.asyncio
    async def test_delete_topic_stops_relay(self):
        driver = connected_driver()
        relay = asyncio.create_task(asyncio.sleep(10))
        driver._relays["orders"] = relay

        await driver.delete_topic("orders")

        assert relay.cancelled()
        driver._admin.delete_topics.assert_awaited_once_with(["orders"])

    @pytest.mark.asyncio
    async def test_ping_fetches_metadata(self):
        driver = connected_driver()
        driver._producer = MagicMock()
        driver._producer.client.fetch_all_metadata = AsyncMock()

        await driver.ping()

        driver._producer.client.fetch_all_metadata.assert_awaited_once()


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_and_close(self):
        producer, admin = AsyncMock(), AsyncMock()
        with (
            patch("brokerz.drivers.kafka.AIOKafkaProducer", return_value=producer),
            patch("brokerz.drivers.kafka.AIOKafkaAdminClient", return_value=admin),
        ):
            driver = KafkaDriver(KafkaConfig(brokers=["a:9092", "b:9092"]))
            await driver.connect()

        assert driver.is_connected
        assert (await driver.get_stats()).driver_info["brokers"] == "a:9092,b:9092"

        await driver.close()
        producer.stop.assert_awaited_once()
        admin.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_admin_failure_stops_producer(self):
        producer, admin = AsyncMock(), AsyncMock()
        admin.start.side_effect = KafkaError("no brokers")
        with (
            patch("brokerz.drivers.kafka.AIOKafkaProducer", return_value=producer),
            patch("brokerz.drivers.kafka.AIOKafkaAdminClient", return_value=admin),
        ):
            driver = KafkaDriver()
            with pytest.raises(ConnectionFailedError):
                await driver.connect()

        producer.stop.assert_awaited_once()
        assert driver.is_connected is False
