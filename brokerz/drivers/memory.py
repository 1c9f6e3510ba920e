"""
In-Memory Driver - For testing and development.

Implements the full driver contract inside the event loop:

- anonymous subscribers each get every message (fan-out),
- members of a group share one queue and compete for messages,
- delayed messages and jobs wait in timer tasks,
- job queues are priority heaps (higher priority first, FIFO otherwise).

Messages are passed through the codec on the way in, so consumers see the
same reconstruction (second-precision timestamps, decoded metadata) as with
a networked backend. Published messages are kept for inspection.

Usage:
    >>> driver = InMemoryDriver()
    >>> await driver.connect()
    >>> await driver.publish_json("orders", {"id": 1})
    >>> assert len(driver.get_messages("orders")) == 1
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, datetime
from typing import Any

from brokerz.core.exceptions import TopicNotFoundError
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
from brokerz.drivers.delay import TimerDelayStrategy

logger = get_logger(__name__)


class _Group:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[Message] = asyncio.Queue()
        self.members = 0


class InMemoryDriver(BaseDriver):
    """
    In-process driver.

    ``simulate_outage()`` makes ping and publish fail until ``restore()`` is
    called, which lets tests exercise health monitoring.
    """

    name = "memory"

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._messages: dict[str, list[Message]] = {}
        self._topics: dict[str, TopicInfo] = {}
        self._anonymous: dict[str, dict[str, asyncio.Queue[Message]]] = {}
        self._groups: dict[tuple[str, str], _Group] = {}
        self._job_queues: dict[str, asyncio.PriorityQueue] = {}
        self._seq = itertools.count()
        self._outage = False
        self.delay_strategy = TimerDelayStrategy(self._deliver, self._spawn)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def get_messages(self, topic: str) -> list[Message]:
        """Messages published to ``topic`` (delayed ones once delivered)."""
        return list(self._messages.get(topic, []))

    def clear(self) -> None:
        self._messages.clear()

    def simulate_outage(self) -> None:
        self._outage = True

    def restore(self) -> None:
        self._outage = False

    def _check_backend(self) -> None:
        if self._outage:
            msg = "memory backend unreachable"
            raise ConnectionError(msg)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        self.stats.set_info("backend", "in-process")

    async def _close(self) -> None:
        self._anonymous.clear()
        self._groups.clear()
        self._job_queues.clear()

    async def _ping(self) -> None:
        self._check_backend()

    async def _publish(self, topic: str, message: Message) -> None:
        self._check_backend()
        await self._deliver(topic, message)

    async def _deliver(self, topic: str, message: Message) -> None:
        encoded = self.codec.encode_message(message)
        self._messages.setdefault(topic, []).append(message)
        self._touch_topic(topic)

        for queue in self._anonymous.get(topic, {}).values():
            queue.put_nowait(self.codec.decode_message(encoded))
        for (group_topic, _), group in self._groups.items():
            if group_topic == topic:
                group.queue.put_nowait(self.codec.decode_message(encoded))

    async def _publish_with_delay(self, topic: str, message: Message, delay: float) -> None:
        self._check_backend()
        await self.delay_strategy.schedule(topic, message, delay)

    async def _subscribe(self, topic: str, group: str | None, handler: MessageHandler) -> Subscription:
        self._touch_topic(topic)
        if group is None:
            key = f"{topic}:{new_id()}"
            queue: asyncio.Queue[Message] = asyncio.Queue()
            self._anonymous.setdefault(topic, {})[key] = queue
            return self._start_subscription(key, topic, self._consume_anonymous(topic, key, queue, handler))

        key = f"{topic}:group:{group}:{new_id()}"
        member = self._groups.setdefault((topic, group), _Group())
        member.members += 1
        return self._start_subscription(
            key, topic, self._consume_group(topic, group, member, handler), group=group
        )

    async def _consume_anonymous(
        self, topic: str, key: str, queue: asyncio.Queue[Message], handler: MessageHandler
    ) -> None:
        try:
            while True:
                message = await queue.get()
                await self._handle_message(message, handler)
        finally:
            self._anonymous.get(topic, {}).pop(key, None)

    async def _consume_group(self, topic: str, group: str, member: _Group, handler: MessageHandler) -> None:
        try:
            while True:
                message = await member.queue.get()
                await self._handle_message(message, handler, group)
        finally:
            member.members -= 1
            if member.members <= 0 and self._groups.get((topic, group)) is member:
                del self._groups[(topic, group)]

    async def _enqueue_job(self, queue: str, job: Job) -> None:
        self._check_backend()
        claimable = self._job_queue(queue)
        copy = self.codec.decode_job(self.codec.encode_job(job))
        if job.delay > 0:
            self._spawn(self._release_job(claimable, copy, job.delay), f"job-delay-{job.id}")
        else:
            claimable.put_nowait((-copy.priority, next(self._seq), copy))

    async def _release_job(self, claimable: asyncio.PriorityQueue, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        claimable.put_nowait((-job.priority, next(self._seq), job))

    def _job_queue(self, queue: str) -> asyncio.PriorityQueue:
        if queue not in self._job_queues:
            self._job_queues[queue] = asyncio.PriorityQueue()
            self.stats.set_gauge("queue_count", len(self._job_queues))
        return self._job_queues[queue]

    async def _process_jobs(self, queue: str, handler: JobHandler) -> Subscription:
        claimable = self._job_queue(queue)
        key = f"jobs:{queue}:{new_id()}"
        return self._start_subscription(key, queue, self._work(claimable, handler), kind="jobs")

    async def _work(self, claimable: asyncio.PriorityQueue, handler: JobHandler) -> None:
        while True:
            _, _, job = await claimable.get()
            await self._handle_job(job, handler)

    async def _create_topic(self, topic: str, config: TopicConfig) -> None:
        if topic not in self._topics:
            self._topics[topic] = TopicInfo(
                name=topic,
                partitions=config.partitions,
                replication_factor=config.replication_factor,
                created_at=datetime.now(UTC),
            )
            self.stats.set_gauge("topic_count", len(self._topics))

    async def _delete_topic(self, topic: str) -> None:
        self._topics.pop(topic, None)
        self._messages.pop(topic, None)
        for subscription in self.subscriptions:
            if subscription.topic == topic and subscription.kind == "subscribe":
                await subscription.cancel()
        self.stats.set_gauge("topic_count", len(self._topics))

    async def _get_topic_info(self, topic: str) -> TopicInfo:
        info = self._topics.get(topic)
        if info is None:
            raise TopicNotFoundError(topic, self.name)
        messages = self._messages.get(topic, [])
        return TopicInfo(
            name=info.name,
            partitions=info.partitions,
            replication_factor=info.replication_factor,
            message_count=len(messages),
            size=sum(len(m.payload) for m in messages),
            created_at=info.created_at,
        )

    def _touch_topic(self, topic: str) -> None:
        if topic not in self._topics:
            self._topics[topic] = TopicInfo(name=topic, created_at=datetime.now(UTC))
            self.stats.set_gauge("topic_count", len(self._topics))
