"""
Driver contract - the interface every backend adapter satisfies.

MessageBroker is the structural protocol the manager relies on. BaseDriver
implements the parts of it that do not depend on the backend:

- lifecycle guards (BrokerClosedError after close, NotConnectedError while
  the backend is down),
- deadline handling and wrapping of backend exceptions into BackendError,
- publish_json and the zero-delay shortcut of publish_with_delay,
- the shared retry path for failed message and job handlers,
- subscription bookkeeping and hard shutdown in close(),
- statistics.

Backends implement the underscore-prefixed hooks (``_connect``,
``_publish``, ``_publish_with_delay``, ``_subscribe``, ``_enqueue_job``,
``_process_jobs``, ``_create_topic``, ``_delete_topic``,
``_get_topic_info``, ``_ping``, ``_close``).
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from brokerz.core.codec import MessageCodec, default_codec
from brokerz.core.exceptions import (
    AlreadySubscribedError,
    BackendError,
    BrokerClosedError,
    BrokerError,
    ConnectionFailedError,
    NotConnectedError,
)
from brokerz.core.logger import get_logger
from brokerz.core.retry import RetryPolicy
from brokerz.core.types import (
    BrokerStats,
    Job,
    JobHandler,
    Message,
    MessageHandler,
    Subscription,
    TopicConfig,
    TopicInfo,
)
from brokerz.drivers.stats import StatsCollector
from brokerz.monitoring.logging import handler_context

if TYPE_CHECKING:  # pragma: no cover
    from brokerz.monitoring.prometheus import PrometheusMetrics

logger = get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class MessageBroker(Protocol):
    """
    Protocol for broker drivers.

    Every operation except subscribe, subscribe_with_group and process_jobs
    returns in bounded time when given a ``timeout`` (seconds).
    """

    name: str

    async def connect(self) -> None: ...

    async def publish(self, topic: str, message: Message, timeout: float | None = None) -> None: ...

    async def publish_json(self, topic: str, data: Any, timeout: float | None = None) -> Message: ...

    async def publish_with_delay(
        self, topic: str, message: Message, delay: float, timeout: float | None = None
    ) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription: ...

    async def subscribe_with_group(
        self, topic: str, group: str, handler: MessageHandler
    ) -> Subscription: ...

    async def enqueue_job(self, queue: str, job: Job, timeout: float | None = None) -> None: ...

    async def process_jobs(self, queue: str, handler: JobHandler) -> Subscription: ...

    async def create_topic(
        self, topic: str, config: TopicConfig | None = None, timeout: float | None = None
    ) -> None: ...

    async def delete_topic(self, topic: str, timeout: float | None = None) -> None: ...

    async def get_topic_info(self, topic: str, timeout: float | None = None) -> TopicInfo: ...

    async def ping(self, timeout: float | None = None) -> None: ...

    async def close(self) -> None: ...

    async def get_stats(self) -> BrokerStats: ...


class BaseDriver(ABC):
    """
    Abstract base class for broker drivers.

    Args:
        retry_policy: Back-off used when republishing failed messages
        codec: Serialization boundary (default: JSONCodec)
        metrics: Optional Prometheus collector
        clock: Wall clock in unix seconds, used for due times
    """

    name: str = "base"

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        codec: MessageCodec | None = None,
        metrics: PrometheusMetrics | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.codec: MessageCodec = codec or default_codec
        self.stats = StatsCollector(self.name, metrics)
        self.clock = clock or time.time
        self._connected = False
        self._closed = False
        self._subscriptions: dict[str, Subscription] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if not s.done]

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise BrokerClosedError(self.name, operation)
        if not self.is_connected:
            raise NotConnectedError(self.name, operation)

    async def _call(self, operation: str, coro: Coroutine[Any, Any, T], timeout: float | None) -> T:
        """Await a backend call under an optional deadline, wrapping foreign errors."""
        try:
            if timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout)
        except BrokerError:
            raise
        except TimeoutError as e:
            raise BackendError(
                self.name, operation, e, message=f"{self.name} {operation} timed out after {timeout}s"
            ) from e
        except Exception as e:
            raise self._translate_error(operation, e) from e

    def _translate_error(self, operation: str, error: Exception) -> BrokerError:
        """Map a backend exception to the broker taxonomy."""
        return BackendError(self.name, operation, error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Connect to the backend.

        Raises:
            BrokerClosedError: If the driver was closed
            ConnectionFailedError: If the backend cannot be reached
        """
        if self._closed:
            raise BrokerClosedError(self.name, "connect")
        if self._connected:
            return
        try:
            await self._connect()
        except BrokerError:
            raise
        except Exception as e:
            raise ConnectionFailedError(f"Failed to connect {self.name} driver: {e}", driver=self.name) from e
        self._connected = True
        self.stats.set_gauge("active_connections", 1)
        logger.info(f"{self.name} driver connected")

    async def close(self) -> None:
        """
        Hard shutdown. Idempotent.

        Cancels every subscription and background task without waiting for
        in-flight handlers, then closes the backend connection.
        """
        if self._closed:
            return
        self._closed = True

        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            await subscription.cancel()
        self._subscriptions.clear()
        await self._cancel_background()

        try:
            await self._close()
        except BrokerError:
            raise
        except Exception as e:
            raise BackendError(self.name, "close", e) from e
        finally:
            self._connected = False
            self.stats.set_gauge("active_connections", 0)
            self.stats.set_gauge("active_subscriptions", 0)
            logger.info(f"{self.name} driver closed")

    async def __aenter__(self) -> BaseDriver:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, topic: str, message: Message, timeout: float | None = None) -> None:
        """
        Deliver a message to every current subscriber of ``topic``.

        Raises:
            BrokerClosedError, NotConnectedError, MessageTooLargeError, BackendError
        """
        self._ensure_open("publish")
        message.topic = topic
        await self._call("publish", self._publish(topic, message), timeout)
        self.stats.increment("messages_published")

    async def publish_json(self, topic: str, data: Any, timeout: float | None = None) -> Message:
        """Encode ``data`` as canonical JSON into a fresh message and publish it."""
        message = Message(
            topic=topic, payload=self.codec.dumps(data), max_retries=self.retry_policy.max_retries
        )
        await self.publish(topic, message, timeout=timeout)
        return message

    async def publish_with_delay(
        self, topic: str, message: Message, delay: float, timeout: float | None = None
    ) -> None:
        """
        Publish a message that no subscriber sees before ``now + delay``.

        Raises:
            ValueError: If delay is negative
        """
        if delay < 0:
            msg = f"delay must be >= 0, got {delay}"
            raise ValueError(msg)
        if delay == 0:
            await self.publish(topic, message, timeout=timeout)
            return
        self._ensure_open("publish_with_delay")
        message.topic = topic
        await self._call("publish_with_delay", self._publish_with_delay(topic, message, delay), timeout)
        self.stats.increment("messages_published")

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        """Install an anonymous (fan-out) handler on ``topic``."""
        self._ensure_open("subscribe")
        return await self._call("subscribe", self._subscribe(topic, None, handler), None)

    async def subscribe_with_group(self, topic: str, group: str, handler: MessageHandler) -> Subscription:
        """Install a handler competing with the other members of ``group``."""
        if not group:
            msg = "group must not be empty"
            raise ValueError(msg)
        self._ensure_open("subscribe_with_group")
        return await self._call("subscribe_with_group", self._subscribe(topic, group, handler), None)

    def _check_subscription_key(self, key: str) -> None:
        existing = self._subscriptions.get(key)
        if existing is not None and not existing.done:
            raise AlreadySubscribedError(key, self.name)

    def _start_subscription(
        self,
        key: str,
        topic: str,
        coro: Coroutine[Any, Any, None],
        group: str | None = None,
        kind: str = "subscribe",
    ) -> Subscription:
        """Run ``coro`` as a background consumer registered under ``key``."""
        try:
            self._check_subscription_key(key)
        except AlreadySubscribedError:
            coro.close()
            raise

        task = asyncio.create_task(coro, name=f"brokerz-{self.name}-{key}")
        subscription = Subscription(
            key, topic, task, group=group, kind=kind, on_cancel=self._subscription_finished
        )
        self._subscriptions[key] = subscription
        self.stats.set_gauge("active_subscriptions", len(self.subscriptions))
        logger.debug(f"{self.name} subscription started: {key}")
        return subscription

    def _subscription_finished(self, subscription: Subscription) -> None:
        if self._subscriptions.get(subscription.key) is subscription:
            del self._subscriptions[subscription.key]
        self.stats.set_gauge("active_subscriptions", len(self.subscriptions))
        task = subscription.task
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"{self.name} subscription {subscription.key} stopped: {task.exception()}",
                extra={"driver": self.name, "topic": subscription.topic},
            )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Start a driver-owned background task, cancelled on close()."""
        task = asyncio.create_task(coro, name=f"brokerz-{self.name}-{name}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _cancel_background(self) -> None:
        tasks = [t for t in self._background if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def _handle_message(self, message: Message, handler: MessageHandler, group: str | None = None) -> bool:
        """
        Run a handler for one delivery.

        Returns True on success. On failure the message is republished with
        retry_count + 1 while retries remain, otherwise dropped; either way
        the caller acknowledges the original delivery.
        """
        with handler_context(driver=self.name, topic=message.topic, message_id=message.id, group=group):
            try:
                await handler(message)
            except Exception as e:
                self.stats.increment("messages_failed")
                logger.warning(
                    f"Handler failed for message {message.id} on {message.topic} "
                    f"(retry {message.retry_count}/{message.max_retries}): {e}",
                    extra={"retry_count": message.retry_count, "error_type": type(e).__name__},
                )
                await self._retry_message(message)
                return False
        self.stats.increment("messages_consumed")
        return True

    async def _retry_message(self, message: Message) -> None:
        if not message.can_retry:
            logger.error(
                f"Message {message.id} on {message.topic} exceeded max retries "
                f"({message.max_retries}), dropping"
            )
            return
        if self._closed:
            return

        retry = message.next_retry()
        delay = self.retry_policy.compute_delay(retry.retry_count)
        try:
            if delay > 0:
                await self._publish_with_delay(retry.topic, retry, delay)
            else:
                await self._publish(retry.topic, retry)
        except Exception as e:
            logger.error(f"Failed to republish message {message.id} on {message.topic}: {e}")
            return
        self.stats.increment("messages_published")
        logger.debug(f"Republished message {retry.id} as retry {retry.retry_count} in {delay:.2f}s")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def enqueue_job(self, queue: str, job: Job, timeout: float | None = None) -> None:
        """
        Place a job on ``queue``.

        Jobs with ``delay > 0`` are not claimable before their due time; jobs
        with ``priority > 0`` are claimed before plain FIFO jobs where the
        backend supports priorities.
        """
        self._ensure_open("enqueue_job")
        job.queue = queue
        await self._call("enqueue_job", self._enqueue_job(queue, job), timeout)
        self.stats.increment("jobs_enqueued")

    async def process_jobs(self, queue: str, handler: JobHandler) -> Subscription:
        """Continuously claim and handle jobs from ``queue``."""
        self._ensure_open("process_jobs")
        return await self._call("process_jobs", self._process_jobs(queue, handler), None)

    async def _handle_job(self, job: Job, handler: JobHandler) -> bool:
        """
        Run a handler for one claimed job.

        attempts and processed_at are updated before the handler runs. A
        failed job is re-enqueued with back-off while attempts remain.
        """
        job.mark_claimed()
        with handler_context(driver=self.name, queue=job.queue, job_id=job.id):
            try:
                await handler(job)
            except Exception as e:
                self.stats.increment("jobs_failed")
                logger.warning(
                    f"Job {job.id} ({job.handler}) failed on {job.queue} "
                    f"(attempt {job.attempts}/{job.max_attempts}): {e}",
                    extra={"error_type": type(e).__name__},
                )
                await self._retry_job(job)
                return False
        self.stats.increment("jobs_processed")
        return True

    async def _retry_job(self, job: Job) -> None:
        if not job.can_retry:
            logger.error(f"Job {job.id} on {job.queue} exhausted {job.max_attempts} attempts, dropping")
            return
        if self._closed:
            return
        job.delay = self.retry_policy.compute_delay(job.attempts)
        try:
            await self._enqueue_job(job.queue, job)
        except Exception as e:
            logger.error(f"Failed to re-enqueue job {job.id} on {job.queue}: {e}")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_topic(
        self, topic: str, config: TopicConfig | None = None, timeout: float | None = None
    ) -> None:
        self._ensure_open("create_topic")
        await self._call("create_topic", self._create_topic(topic, config or TopicConfig()), timeout)

    async def delete_topic(self, topic: str, timeout: float | None = None) -> None:
        self._ensure_open("delete_topic")
        await self._call("delete_topic", self._delete_topic(topic), timeout)

    async def get_topic_info(self, topic: str, timeout: float | None = None) -> TopicInfo:
        """
        Raises:
            TopicNotFoundError: If the backend does not know the topic
        """
        self._ensure_open("get_topic_info")
        return await self._call("get_topic_info", self._get_topic_info(topic), timeout)

    async def ping(self, timeout: float | None = None) -> None:
        """Return when the backend is reachable and the driver is open."""
        self._ensure_open("ping")
        await self._call("ping", self._ping(), timeout)

    async def get_stats(self) -> BrokerStats:
        """Snapshot (defensive copy) of counters and gauges."""
        return self.stats.snapshot()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _connect(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...

    @abstractmethod
    async def _publish(self, topic: str, message: Message) -> None: ...

    @abstractmethod
    async def _publish_with_delay(self, topic: str, message: Message, delay: float) -> None: ...

    @abstractmethod
    async def _subscribe(self, topic: str, group: str | None, handler: MessageHandler) -> Subscription: ...

    @abstractmethod
    async def _enqueue_job(self, queue: str, job: Job) -> None: ...

    @abstractmethod
    async def _process_jobs(self, queue: str, handler: JobHandler) -> Subscription: ...

    @abstractmethod
    async def _create_topic(self, topic: str, config: TopicConfig) -> None: ...

    @abstractmethod
    async def _delete_topic(self, topic: str) -> None: ...

    @abstractmethod
    async def _get_topic_info(self, topic: str) -> TopicInfo: ...

    @abstractmethod
    async def _ping(self) -> None: ...


__all__ = ["BaseDriver", "MessageBroker"]
