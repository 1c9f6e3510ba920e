"""
Kafka Driver - partitioned-log backend on aiokafka.

- One producer and one admin client per driver.
- Every subscription owns an AIOKafkaConsumer in its consumer group;
  several subscriptions in the same group (even in one process) split the
  topic's partitions between them. ``subscribe`` joins the configured
  ``group_id``, so anonymous subscribers on this backend share messages;
  use distinct groups for fan-out.
- Offsets are committed manually after the handler (or its retry) finished.
- Kafka has no delayed delivery: delayed messages go to ``<topic>.delayed``
  with ``delayed_until``/``original_delay`` metadata and a relay moves them
  to ``<topic>`` when due (see SatelliteTopicStrategy).

Usage:
    >>> driver = KafkaDriver(KafkaConfig(brokers=["localhost:9092"]))
    >>> await driver.connect()
    >>> await driver.create_topic("orders", TopicConfig(partitions=3))
    >>> await driver.publish_json("orders", {"order_id": "123"})
"""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from brokerz.core.codec import format_duration
from brokerz.core.config import KafkaConfig
from brokerz.core.exceptions import (
    MessageTooLargeError,
    MissingDependencyError,
    NotConnectedError,
    SerializationError,
    TopicNotFoundError,
)
from brokerz.core.logger import get_logger
from brokerz.core.types import (
    Job,
    JobHandler,
    Message,
    MessageHandler,
    Subscription,
    TopicConfig,
    TopicInfo,
    new_id,
)
from brokerz.drivers.base import BaseDriver

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
    from aiokafka import codec as kafka_codec
    from aiokafka.admin import AIOKafkaAdminClient, NewTopic
    from aiokafka.errors import KafkaError, MessageSizeTooLargeError
    from aiokafka.helpers import create_ssl_context

    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    AIOKafkaConsumer = None  # pragma: no cover
    AIOKafkaProducer = None  # pragma: no cover
    AIOKafkaAdminClient = None  # pragma: no cover
    NewTopic = None  # pragma: no cover
    TopicPartition = None  # pragma: no cover
    kafka_codec = None  # pragma: no cover
    create_ssl_context = None  # pragma: no cover
    KafkaError = Exception  # pragma: no cover
    MessageSizeTooLargeError = Exception  # pragma: no cover

logger = get_logger(__name__)

RESERVED_HEADERS = ("message_id", "retry_count", "max_retries", "timestamp")
META_PREFIX = "meta_"
DELAYED_SUFFIX = ".delayed"
DELAYED_UNTIL = "delayed_until"
ORIGINAL_DELAY = "original_delay"
RESTART_BACKOFF = 1.0
RELEASE_ATTEMPTS = 3
ACKS = {0: 0, 1: 1, -1: "all"}


def satellite_topic(topic: str) -> str:
    return f"{topic}{DELAYED_SUFFIX}"


class SatelliteTopicStrategy:
    """
    Delay through a satellite topic.

    schedule() writes the message to ``<topic>.delayed`` tagged with
    ``delayed_until`` (unix seconds) and ``original_delay`` (human duration),
    then makes sure the topic's SatelliteRelay is running.
    """

    name = "satellite-topic"

    def __init__(self, driver: KafkaDriver):
        self.driver = driver

    async def schedule(self, topic: str, message: Message, delay: float) -> None:
        due = self.driver.clock() + delay
        parked = replace(
            message,
            headers=dict(message.headers),
            metadata={
                **message.metadata,
                DELAYED_UNTIL: int(due),
                ORIGINAL_DELAY: format_duration(delay),
            },
        )
        await self.driver.send(satellite_topic(topic), parked)
        await self.driver.ensure_relay(topic)


class SatelliteRelay:
    """
    Moves due records from ``<topic>.delayed`` back to ``<topic>``.

    Records that are not yet due are parked in memory with a timer. The
    committed offset of each partition never passes a record that has not
    been republished, so parked records survive a restart (they are read
    again and re-parked).
    """

    def __init__(self, driver: KafkaDriver, topic: str):
        self.driver = driver
        self.topic = topic
        self.source = satellite_topic(topic)
        self._consumer: Any = None
        self._pending: dict[Any, set[int]] = {}
        self._highest: dict[Any, int] = {}
        self._committed: dict[Any, int] = {}
        self._timers: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._consumer = self.driver.new_consumer(
            self.source, f"{self.driver.config.group_id}{DELAYED_SUFFIX}", offset_reset="earliest"
        )
        await self._consumer.start()

    async def run(self) -> None:
        try:
            while True:
                try:
                    async for record in self._consumer:
                        await self._accept(record)
                except KafkaError as e:
                    logger.warning(f"Delay relay for {self.topic} restarting: {e}")
                    await asyncio.sleep(RESTART_BACKOFF)
        finally:
            for timer in self._timers:
                timer.cancel()
            if self._timers:
                await asyncio.gather(*self._timers, return_exceptions=True)
            await self._consumer.stop()

    async def _accept(self, record: Any) -> None:
        tp = TopicPartition(record.topic, record.partition)
        try:
            message = self.driver.decode_record(record, self.topic)
        except SerializationError as e:
            logger.warning(f"Skipping undecodable delayed record on {self.source}: {e}")
            self._pending.setdefault(tp, set())
            self._highest[tp] = record.offset
            await self._commit(tp)
            return

        self._pending.setdefault(tp, set()).add(record.offset)
        self._highest[tp] = record.offset
        due = float(message.metadata.pop(DELAYED_UNTIL, 0) or 0)
        message.metadata.pop(ORIGINAL_DELAY, None)
        wait = due - self.driver.clock()
        if wait <= 0:
            await self._release(tp, record.offset, message)
            return
        timer = asyncio.create_task(self._release_later(tp, record.offset, message, wait))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _release_later(self, tp: Any, offset: int, message: Message, wait: float) -> None:
        await asyncio.sleep(wait)
        await self._release(tp, offset, message)

    async def _release(self, tp: Any, offset: int, message: Message) -> None:
        """Republish a due record, retrying until it succeeds or the relay is cancelled."""
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.driver.send(self.topic, message)
                break
            except KafkaError as e:
                if attempt == RELEASE_ATTEMPTS:
                    logger.error(
                        f"Relaying delayed message {message.id} to {self.topic} still failing "
                        f"after {attempt} attempts, retrying: {e}"
                    )
                else:
                    logger.warning(f"Relaying delayed message {message.id} to {self.topic} failed ({attempt}): {e}")
                await asyncio.sleep(RESTART_BACKOFF)
        self._pending[tp].discard(offset)
        await self._commit(tp)

    async def _commit(self, tp: Any) -> None:
        outstanding = self._pending.get(tp)
        offset = min(outstanding) if outstanding else self._highest[tp] + 1
        if offset <= self._committed.get(tp, -1):
            return
        try:
            await self._consumer.commit({tp: offset})
        except KafkaError as e:
            # The next successful commit on this partition covers the offset.
            logger.warning(f"Committing {self.source} offset {offset} failed: {e}")
            return
        self._committed[tp] = offset


class KafkaDriver(BaseDriver):
    """
    Partitioned-log driver on Kafka.

    Example:
        >>> driver = KafkaDriver(KafkaConfig(brokers=["localhost:9092"], group_id="billing"))
        >>> await driver.connect()
        >>> sub = await driver.subscribe_with_group("orders", "billing", handle)
        >>> await driver.publish_with_delay("orders", Message(topic="orders"), delay=10)
    """

    name = "log"

    def __init__(self, config: KafkaConfig | None = None, **kwargs: Any):
        """
        Raises:
            MissingDependencyError: If aiokafka is not installed
        """
        if not KAFKA_AVAILABLE:
            msg = "aiokafka"
            raise MissingDependencyError(msg, "Kafka message broker driver")  # pragma: no cover

        super().__init__(**kwargs)
        self.config = config or KafkaConfig()
        self._producer: Any = None
        self._admin: Any = None
        self._relays: dict[str, asyncio.Task] = {}
        self._relay_lock = asyncio.Lock()
        self.delay_strategy = SatelliteTopicStrategy(self)

    # ------------------------------------------------------------------
    # Client options
    # ------------------------------------------------------------------

    def _security_options(self) -> dict[str, Any]:
        tls, sasl = self.config.tls, self.config.sasl
        options: dict[str, Any] = {}
        if tls.enabled:
            context = create_ssl_context(
                cafile=tls.ca_file,
                certfile=tls.cert_file,
                keyfile=tls.key_file,
            )
            if tls.insecure_skip_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            options["ssl_context"] = context
            options["security_protocol"] = "SSL"
        if sasl.enabled:
            options["sasl_mechanism"] = sasl.mechanism
            options["sasl_plain_username"] = sasl.username
            options["sasl_plain_password"] = sasl.password
            options["security_protocol"] = "SASL_SSL" if tls.enabled else "SASL_PLAINTEXT"
        return options

    def _common_options(self) -> dict[str, Any]:
        return {
            "bootstrap_servers": self.config.bootstrap_servers,
            "client_id": self.config.client_id,
            "request_timeout_ms": int(self.config.connect_timeout * 1000),
            **self._security_options(),
        }

    def producer_options(self) -> dict[str, Any]:
        options = {
            **self._common_options(),
            "acks": ACKS[self.config.required_acks],
            "linger_ms": int(self.config.flush_frequency * 1000),
        }
        compression = self.config.compression
        if compression != "none":
            if getattr(kafka_codec, f"has_{compression}")():
                options["compression_type"] = compression
            else:
                logger.warning(f"Kafka {compression} compression library not installed, sending uncompressed")
        return options

    def consumer_options(self, group: str, offset_reset: str | None = None) -> dict[str, Any]:
        if offset_reset is None:
            offset_reset = "earliest" if self.config.initial_offset == "oldest" else "latest"
        return {
            **self._common_options(),
            "group_id": group,
            # Handled offsets are committed explicitly, whatever the config says.
            "enable_auto_commit": False,
            "auto_offset_reset": offset_reset,
            "session_timeout_ms": int(self.config.session_timeout * 1000),
            "heartbeat_interval_ms": int(self.config.heartbeat_interval * 1000),
            "rebalance_timeout_ms": int(self.config.rebalance_timeout * 1000),
        }

    def new_consumer(self, topic: str, group: str, offset_reset: str | None = None) -> Any:
        return AIOKafkaConsumer(topic, **self.consumer_options(group, offset_reset))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        logger.info(f"Connecting to Kafka at {self.config.bootstrap_servers}")
        producer = AIOKafkaProducer(**self.producer_options())
        await producer.start()
        admin = AIOKafkaAdminClient(**self._common_options())
        try:
            await admin.start()
        except Exception:
            await producer.stop()
            raise
        self._producer, self._admin = producer, admin
        self.stats.set_info("brokers", self.config.bootstrap_servers)
        self.stats.set_info("group_id", self.config.group_id)

    async def _close(self) -> None:
        self._relays.clear()
        producer, admin = self._producer, self._admin
        self._producer = self._admin = None
        try:
            if producer is not None:
                await producer.stop()
        finally:
            if admin is not None:
                await admin.close()

    async def _ping(self) -> None:
        if self._producer is None:
            raise NotConnectedError(self.name, "ping")
        await self._producer.client.fetch_all_metadata()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def record_headers(self, message: Message) -> list[tuple[str, bytes]]:
        headers = [(k, v.encode("utf-8")) for k, v in message.headers.items()]
        headers.extend(
            (f"{META_PREFIX}{k}", self.codec.encode_header_value(v).encode("utf-8"))
            for k, v in message.metadata.items()
        )
        headers.extend(
            [
                ("message_id", message.id.encode("utf-8")),
                ("retry_count", str(message.retry_count).encode("utf-8")),
                ("max_retries", str(message.max_retries).encode("utf-8")),
                ("timestamp", str(int(message.timestamp.timestamp())).encode("utf-8")),
            ]
        )
        return headers

    def decode_record(self, record: Any, topic: str | None = None) -> Message:
        reserved: dict[str, str] = {}
        headers: dict[str, str] = {}
        metadata: dict[str, Any] = {}
        for key, raw in record.headers or ():
            value = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
            if key in RESERVED_HEADERS:
                reserved[key] = value
            elif key.startswith(META_PREFIX):
                metadata[key[len(META_PREFIX):]] = self.codec.decode_header_value(value)
            else:
                headers[key] = value

        if "timestamp" in reserved:
            timestamp = datetime.fromtimestamp(int(reserved["timestamp"]), UTC)
        else:
            timestamp = datetime.fromtimestamp(record.timestamp / 1000, UTC)
        key = record.key.decode("utf-8", errors="replace") if record.key else ""
        try:
            return Message(
                id=reserved.get("message_id") or key,
                topic=topic or record.topic,
                payload=record.value or b"",
                headers=headers,
                metadata=metadata,
                timestamp=timestamp,
                retry_count=int(reserved.get("retry_count", 0)),
                max_retries=int(reserved.get("max_retries", 3)),
            )
        except ValueError as e:
            msg = f"Invalid record on {record.topic}: {e}"
            raise SerializationError(msg, type_name="Message") from e

    async def send(self, topic: str, message: Message) -> None:
        """Produce one record and wait for the configured acks."""
        if self._producer is None:
            raise NotConnectedError(self.name, "publish")
        try:
            await self._producer.send_and_wait(
                topic,
                value=message.payload,
                key=message.id.encode("utf-8"),
                headers=self.record_headers(message),
                timestamp_ms=int(message.timestamp.timestamp() * 1000),
            )
        except MessageSizeTooLargeError as e:
            raise MessageTooLargeError(topic, len(message.payload), self.name) from e

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _publish(self, topic: str, message: Message) -> None:
        await self.send(topic, message)
        logger.debug(f"Published message {message.id} to Kafka topic {topic}")

    async def _publish_with_delay(self, topic: str, message: Message, delay: float) -> None:
        await self.delay_strategy.schedule(topic, message, delay)

    async def ensure_relay(self, topic: str) -> None:
        """Start the satellite relay for ``topic`` unless it already runs."""
        async with self._relay_lock:
            task = self._relays.get(topic)
            if task is not None and not task.done():
                return
            relay = SatelliteRelay(self, topic)
            await relay.start()
            self._relays[topic] = self._spawn(relay.run(), f"relay-{topic}")

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def _subscribe(self, topic: str, group: str | None, handler: MessageHandler) -> Subscription:
        group_id = group or self.config.group_id
        consumer = self.new_consumer(topic, group_id)
        await consumer.start()
        await self.ensure_relay(topic)

        async def deliver(record: Any) -> None:
            try:
                message = self.decode_record(record, topic)
            except SerializationError as e:
                logger.warning(f"Skipping undecodable record on {topic}: {e}")
                return
            await self._handle_message(message, handler, group)

        key = f"{topic}:{group_id}:{new_id()}"
        return self._start_subscription(key, topic, self._consume(consumer, topic, group_id, deliver), group=group)

    async def _consume(
        self, consumer: Any, topic: str, group_id: str, deliver: Callable[[Any], Awaitable[None]]
    ) -> None:
        """Consume until cancelled; a failed session is restarted with a fresh consumer."""
        try:
            while True:
                try:
                    async for record in consumer:
                        await deliver(record)
                        tp = TopicPartition(record.topic, record.partition)
                        await consumer.commit({tp: record.offset + 1})
                except KafkaError as e:
                    logger.warning(f"Kafka consumer for {topic} ({group_id}) restarting: {e}")
                    consumer = await self._restart_consumer(consumer, topic, group_id)
        finally:
            await consumer.stop()

    async def _restart_consumer(self, consumer: Any, topic: str, group_id: str) -> Any:
        """Replace a failed consumer, backing off until a fresh one starts."""
        while True:
            try:
                await consumer.stop()
            except (KafkaError, OSError) as e:
                logger.debug(f"Stopping failed Kafka consumer for {topic} raised: {e}")
            await asyncio.sleep(RESTART_BACKOFF)
            consumer = self.new_consumer(topic, group_id)
            try:
                await consumer.start()
            except (KafkaError, OSError) as e:
                logger.warning(f"Kafka consumer for {topic} ({group_id}) failed to start, retrying: {e}")
                continue
            return consumer

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _enqueue_job(self, queue: str, job: Job) -> None:
        message = Message(
            topic=queue,
            payload=self.codec.encode_job(job),
            headers={"job_handler": job.handler},
            metadata={"job_priority": job.priority},
        )
        if job.delay > 0:
            await self._publish_with_delay(queue, message, job.delay)
        else:
            await self.send(queue, message)

    async def _process_jobs(self, queue: str, handler: JobHandler) -> Subscription:
        group_id = self.config.group_id
        consumer = self.new_consumer(queue, group_id)
        await consumer.start()
        await self.ensure_relay(queue)

        async def deliver(record: Any) -> None:
            try:
                job = self.codec.decode_job(record.value)
            except SerializationError as e:
                logger.warning(f"Skipping undecodable job on {queue}: {e}")
                return
            await self._handle_job(job, handler)

        key = f"jobs:{queue}:{new_id()}"
        return self._start_subscription(key, queue, self._consume(consumer, queue, group_id, deliver), kind="jobs")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def _create_topic(self, topic: str, config: TopicConfig) -> None:
        existing = await self._admin.list_topics()
        if topic in existing:
            logger.debug(f"Kafka topic {topic} already exists")
            return
        await self._admin.create_topics(
            [
                NewTopic(
                    name=topic,
                    num_partitions=config.partitions,
                    replication_factor=config.replication_factor,
                    topic_configs=config.to_entries(),
                )
            ]
        )
        logger.info(f"Created Kafka topic {topic} ({config.partitions} partitions)")

    async def _delete_topic(self, topic: str) -> None:
        for subscription in self.subscriptions:
            if subscription.topic == topic:
                await subscription.cancel()
        relay = self._relays.pop(topic, None)
        if relay is not None:
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
        await self._admin.delete_topics([topic])

    async def _get_topic_info(self, topic: str) -> TopicInfo:
        described = await self._admin.describe_topics([topic])
        entry = next((t for t in described or () if t.get("topic") == topic), None)
        if entry is None or entry.get("error_code", 0) != 0 or not entry.get("partitions"):
            raise TopicNotFoundError(topic, self.name)
        partitions = entry["partitions"]
        return TopicInfo(
            name=topic,
            partitions=len(partitions),
            replication_factor=len(partitions[0].get("replicas") or ()) or 1,
            message_count=0,
        )


def is_kafka_available() -> bool:
    """Check if Kafka support is available."""
    return KAFKA_AVAILABLE
