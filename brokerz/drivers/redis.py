"""
Redis Driver - key-value pub/sub backend.

Uses redis-py's asyncio client:

- pub/sub channels for topics (fan-out only, see below),
- ``delayed:<topic>`` sorted sets for delayed messages,
- ``queue:<name>`` lists for FIFO jobs,
- ``priority:<name>`` sorted sets (score = -priority) for prioritised jobs,
- ``delayed_jobs:<name>`` sorted sets for delayed jobs.

Group labels only make the subscription key distinct
(``<topic>:group:<group>``); Redis pub/sub delivers every message to every
subscriber, so groups on this backend never split messages between members.
There is no back-pressure: a slow subscriber buffers on the client side.

Usage:
    >>> driver = RedisDriver(RedisConfig(host="localhost"))
    >>> await driver.connect()
    >>> await driver.publish_json("orders", {"order_id": "123"})
"""

from __future__ import annotations

import asyncio
from typing import Any

from brokerz.core.codec import format_duration
from brokerz.core.config import RedisConfig
from brokerz.core.exceptions import (
    AlreadySubscribedError,
    MissingDependencyError,
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
from brokerz.drivers.delay import DelayDispatcher

try:
    import redis.asyncio as redis
    from redis.asyncio.retry import Retry
    from redis.backoff import ExponentialBackoff

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    redis = None
    Retry = None  # pragma: no cover
    ExponentialBackoff = None  # pragma: no cover


logger = get_logger(__name__)

POLL_INTERVAL = 1.0
DISPATCH_BATCH = 100
RECEIVE_TIMEOUT = 1.0


def delayed_key(topic: str) -> str:
    return f"delayed:{topic}"


def queue_key(queue: str) -> str:
    return f"queue:{queue}"


def priority_key(queue: str) -> str:
    return f"priority:{queue}"


def delayed_jobs_key(queue: str) -> str:
    return f"delayed_jobs:{queue}"


def subscription_key(topic: str, group: str | None) -> str:
    return f"{topic}:group:{group}" if group else topic


class SortedSetDelayStrategy:
    """
    Park delayed messages in ``delayed:<topic>`` scored by due time.

    The driver's DelayDispatcher moves due entries to the channel. An entry
    is published only by the poller whose ZREM removed it, so concurrent
    processes never dispatch the same entry twice. A crash between ZREM and
    PUBLISH loses the entry.
    """

    name = "sorted-set"

    def __init__(self, driver: RedisDriver):
        self.driver = driver

    async def schedule(self, topic: str, message: Message, delay: float) -> None:
        due = self.driver.clock() + delay
        member = self.driver.codec.encode_message(
            message, execute_at=int(due), delay=format_duration(delay)
        )
        await self.driver.client.zadd(delayed_key(topic), {member: due})
        self.driver.message_dispatcher.ensure(topic)

    async def dispatch_due(self, topic: str) -> int:
        client = self.driver.client
        key = delayed_key(topic)
        due = await client.zrangebyscore(key, 0, self.driver.clock(), start=0, num=DISPATCH_BATCH)
        dispatched = 0
        for member in due:
            if await client.zrem(key, member) != 1:
                continue
            await client.publish(topic, member)
            dispatched += 1
        if dispatched:
            logger.debug(f"Dispatched {dispatched} delayed message(s) to {topic}")
        return dispatched


class RedisDriver(BaseDriver):
    """
    Key-value pub/sub driver on Redis.

    Example:
        >>> driver = RedisDriver(RedisConfig(host="localhost", db=1))
        >>> await driver.connect()
        >>> sub = await driver.subscribe("orders", handle_order)
        >>> await driver.publish_with_delay("orders", Message(topic="orders"), delay=3)
        >>> await sub.cancel()
        >>> await driver.close()
    """

    name = "kv"

    def __init__(self, config: RedisConfig | None = None, **kwargs: Any):
        """
        Raises:
            MissingDependencyError: If redis-py is not installed
        """
        if not REDIS_AVAILABLE:
            msg = "redis"
            raise MissingDependencyError(msg, "Redis message broker driver")

        super().__init__(**kwargs)
        self.config = config or RedisConfig()
        self._client: Any = None
        self._seen_topics: set[str] = set()
        self._seen_queues: set[str] = set()
        self.delay_strategy = SortedSetDelayStrategy(self)
        self.message_dispatcher = DelayDispatcher(
            self.delay_strategy.dispatch_due,
            self._spawn,
            interval=POLL_INTERVAL,
            batch_size=DISPATCH_BATCH,
            label="delayed-messages",
        )
        self.job_dispatcher = DelayDispatcher(
            self._move_due_jobs,
            self._spawn,
            interval=POLL_INTERVAL,
            batch_size=DISPATCH_BATCH,
            label="delayed-jobs",
        )

    @property
    def client(self) -> Any:
        return self._client

    def _safe_url(self) -> str:
        auth = ":***@" if self.config.password else ""
        return f"redis://{auth}{self.config.host}:{self.config.port}/{self.config.db}"

    def _client_options(self) -> dict[str, Any]:
        cfg = self.config
        options: dict[str, Any] = {
            "host": cfg.host,
            "port": cfg.port,
            "password": cfg.password or None,
            "db": cfg.db,
            "max_connections": cfg.pool_size,
            "socket_connect_timeout": cfg.connect_timeout,
            # One socket timeout covers reads and writes.
            "socket_timeout": max(cfg.read_timeout, cfg.write_timeout),
            "health_check_interval": cfg.idle_timeout,
            "retry": Retry(ExponentialBackoff(), cfg.max_retries),
            "decode_responses": False,
        }
        if cfg.tls.enabled:
            options.update(
                {
                    "ssl": True,
                    "ssl_certfile": cfg.tls.cert_file,
                    "ssl_keyfile": cfg.tls.key_file,
                    "ssl_ca_certs": cfg.tls.ca_file,
                    "ssl_cert_reqs": "none" if cfg.tls.insecure_skip_verify else "required",
                }
            )
        return options

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        logger.info(f"Connecting to Redis: {self._safe_url()}")
        self._client = redis.Redis(**self._client_options())
        try:
            await self._client.ping()
        except Exception:
            await self._client.aclose()
            self._client = None
            raise
        self.stats.set_info("host", f"{self.config.host}:{self.config.port}")
        self.stats.set_info("db", str(self.config.db))

    async def _close(self) -> None:
        await self.message_dispatcher.stop_all()
        await self.job_dispatcher.stop_all()
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _ping(self) -> None:
        await self._client.ping()

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def _see_topic(self, topic: str) -> None:
        if topic not in self._seen_topics:
            self._seen_topics.add(topic)
            self.stats.set_gauge("topic_count", len(self._seen_topics))

    async def _publish(self, topic: str, message: Message) -> None:
        await self._client.publish(topic, self.codec.encode_message(message))
        self._see_topic(topic)

    async def _publish_with_delay(self, topic: str, message: Message, delay: float) -> None:
        await self.delay_strategy.schedule(topic, message, delay)
        self._see_topic(topic)

    async def _subscribe(self, topic: str, group: str | None, handler: MessageHandler) -> Subscription:
        key = subscription_key(topic, group)
        self._check_subscription_key(key)

        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(topic)
        self._see_topic(topic)
        # Deliver entries parked by earlier processes too.
        self.message_dispatcher.ensure(topic)
        try:
            return self._start_subscription(key, topic, self._listen(pubsub, topic, group, handler), group=group)
        except AlreadySubscribedError:
            # Lost a race with a concurrent subscribe; the listener never ran.
            await self._release_pubsub(pubsub, topic)
            raise

    async def _listen(self, pubsub: Any, topic: str, group: str | None, handler: MessageHandler) -> None:
        try:
            while True:
                try:
                    raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=RECEIVE_TIMEOUT)
                except redis.ConnectionError as e:
                    logger.warning(f"Redis subscription on {topic} lost its connection: {e}")
                    await asyncio.sleep(POLL_INTERVAL)
                    continue
                if raw is None or raw.get("type") != "message":
                    continue
                try:
                    message = self.codec.decode_message(raw["data"], topic)
                except SerializationError as e:
                    logger.warning(f"Dropping undecodable message on {topic}: {e}")
                    continue
                await self._handle_message(message, handler, group)
        finally:
            await self._release_pubsub(pubsub, topic)

    async def _release_pubsub(self, pubsub: Any, topic: str) -> None:
        try:
            await pubsub.unsubscribe(topic)
            await pubsub.aclose()
        except Exception as e:
            logger.debug(f"Error releasing pubsub for {topic}: {e}")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _see_queue(self, queue: str) -> None:
        if queue not in self._seen_queues:
            self._seen_queues.add(queue)
            self.stats.set_gauge("queue_count", len(self._seen_queues))

    async def _enqueue_job(self, queue: str, job: Job) -> None:
        data = self.codec.encode_job(job)
        if job.delay > 0:
            await self._client.zadd(delayed_jobs_key(queue), {data: self.clock() + job.delay})
            self.job_dispatcher.ensure(queue)
        elif job.priority > 0:
            await self._client.zadd(priority_key(queue), {data: -job.priority})
        else:
            await self._client.lpush(queue_key(queue), data)
        self._see_queue(queue)

    async def _move_due_jobs(self, queue: str) -> int:
        """Move due delayed jobs to their claimable structure (pipelined ZREM + push)."""
        key = delayed_jobs_key(queue)
        due = await self._client.zrangebyscore(key, 0, self.clock(), start=0, num=DISPATCH_BATCH)
        if not due:
            return 0
        pipe = self._client.pipeline(transaction=True)
        for data in due:
            pipe.zrem(key, data)
            priority = self._job_priority(data)
            if priority > 0:
                pipe.zadd(priority_key(queue), {data: -priority})
            else:
                pipe.lpush(queue_key(queue), data)
        await pipe.execute()
        logger.debug(f"Moved {len(due)} delayed job(s) to {queue}")
        return len(due)

    def _job_priority(self, data: bytes) -> int:
        try:
            return self.codec.decode_job(data).priority
        except SerializationError:
            return 0

    async def _process_jobs(self, queue: str, handler: JobHandler) -> Subscription:
        self._see_queue(queue)
        self.job_dispatcher.ensure(queue)
        key = f"jobs:{queue}:{new_id()}"
        return self._start_subscription(key, queue, self._work(queue, handler), kind="jobs")

    async def _claim(self, queue: str) -> bytes | None:
        """Pop the next job: priority set first, then a short blocking FIFO pop."""
        popped = await self._client.zpopmin(priority_key(queue), 1)
        if popped:
            return popped[0][0]
        result = await self._client.brpop([queue_key(queue)], timeout=int(RECEIVE_TIMEOUT))
        if result is None:
            return None
        return result[1]

    async def _work(self, queue: str, handler: JobHandler) -> None:
        while True:
            try:
                data = await self._claim(queue)
            except redis.ConnectionError as e:
                logger.warning(f"Job worker on {queue} lost its connection: {e}")
                await asyncio.sleep(POLL_INTERVAL)
                continue
            if data is None:
                continue
            try:
                job = self.codec.decode_job(data)
            except SerializationError as e:
                logger.warning(f"Dropping undecodable job on {queue}: {e}")
                continue
            await self._handle_job(job, handler)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def _create_topic(self, topic: str, config: TopicConfig) -> None:
        # Channels are implicit.
        self._see_topic(topic)

    async def _delete_topic(self, topic: str) -> None:
        await self._client.delete(delayed_key(topic))
        await self.message_dispatcher.stop(topic)
        group_prefix = f"{topic}:group:"
        for subscription in self.subscriptions:
            if subscription.kind == "subscribe" and (
                subscription.key == topic or subscription.key.startswith(group_prefix)
            ):
                await subscription.cancel()
        self._seen_topics.discard(topic)
        self.stats.set_gauge("topic_count", len(self._seen_topics))

    async def _get_topic_info(self, topic: str) -> TopicInfo:
        if topic not in self._seen_topics:
            raise TopicNotFoundError(topic, self.name)
        pending = await self._client.zcard(delayed_key(topic))
        return TopicInfo(name=topic, partitions=1, replication_factor=1, message_count=pending)


def is_redis_available() -> bool:
    """Check if redis-py is installed."""
    return REDIS_AVAILABLE
