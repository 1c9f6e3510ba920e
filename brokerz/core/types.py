"""
Value types carried through the broker.

Message is the fan-out carrier used by publish/subscribe, Job the unit of
work used by the job queues. TopicConfig, TopicInfo and BrokerStats are
the descriptors returned by the administrative operations, and
Subscription is the handle callers use to stop a background consumer.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from brokerz.core.exceptions import MaxRetriesExceededError

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_ATTEMPTS = 3


def _now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def to_payload(value: Any) -> bytes:
    """
    Coerce a value into payload bytes.

    bytes are kept, str is UTF-8 encoded, anything else is canonical JSON.
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray | memoryview):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    from brokerz.core.codec import default_codec

    return default_codec.dumps(value)


@dataclass
class Message:
    """
    A message published to a topic.

    Attributes:
        topic: Destination topic
        payload: Opaque body (may be empty)
        id: Unique identifier, generated when empty
        headers: String headers
        metadata: Typed metadata values
        timestamp: Creation time (UTC)
        retry_count: Number of redeliveries so far
        max_retries: Retry ceiling
    """

    topic: str
    payload: bytes = b""
    id: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_id()
        self.payload = to_payload(self.payload)
        if self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=UTC)
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValueError(msg)
        if not 0 <= self.retry_count <= self.max_retries:
            msg = (
                f"retry_count must be within [0, {self.max_retries}], "
                f"got {self.retry_count}"
            )
            raise ValueError(msg)

    @classmethod
    def create(cls, topic: str, payload: Any = b"", **kwargs: Any) -> Message:
        return cls(topic=topic, payload=to_payload(payload), **kwargs)

    def with_headers(self, headers: dict[str, str]) -> Message:
        self.headers.update(headers)
        return self

    def with_metadata(self, metadata: dict[str, Any]) -> Message:
        self.metadata.update(metadata)
        return self

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def next_retry(self) -> Message:
        """
        Copy of this message with retry_count + 1.

        Raises:
            MaxRetriesExceededError: If the ceiling is already reached
        """
        if not self.can_retry:
            raise MaxRetriesExceededError(self.id, self.retry_count, self.max_retries)
        return replace(
            self,
            headers=dict(self.headers),
            metadata=dict(self.metadata),
            retry_count=self.retry_count + 1,
        )

    @property
    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def unmarshal_payload(self) -> Any:
        return json.loads(self.payload)


@dataclass
class Job:
    """
    A unit of work placed on a job queue.

    Attributes:
        queue: Work queue name
        handler: Opaque routing key into the worker's dispatch table
        payload: Opaque body
        priority: Higher runs earlier; 0 means plain FIFO
        delay: Seconds before the job becomes claimable
        attempts: Number of times a worker claimed the job
        max_attempts: Attempt ceiling
        processed_at: Last time a worker claimed the job
    """

    queue: str
    handler: str = ""
    payload: bytes = b""
    id: str = ""
    priority: int = 0
    delay: float = 0.0
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: datetime = field(default_factory=_now)
    processed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_id()
        self.payload = to_payload(self.payload)
        if self.delay < 0:
            msg = f"delay must be >= 0, got {self.delay}"
            raise ValueError(msg)
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)

    @classmethod
    def create(cls, queue: str, handler: str, payload: Any = b"", **kwargs: Any) -> Job:
        return cls(queue=queue, handler=handler, payload=to_payload(payload), **kwargs)

    def with_priority(self, priority: int) -> Job:
        self.priority = priority
        return self

    def with_delay(self, delay: float) -> Job:
        if delay < 0:
            msg = f"delay must be >= 0, got {delay}"
            raise ValueError(msg)
        self.delay = delay
        return self

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    @property
    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def unmarshal_payload(self) -> Any:
        return json.loads(self.payload)

    def mark_claimed(self) -> None:
        """Record one more attempt, stamped now."""
        self.attempts += 1
        self.processed_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "handler": self.handler,
            "payload": self.payload.decode("utf-8", errors="surrogateescape"),
            "priority": self.priority,
            "delay": self.delay,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        processed_at = data.get("processed_at")
        created_at = data.get("created_at")
        return cls(
            id=data.get("id", ""),
            queue=data["queue"],
            handler=data.get("handler", ""),
            payload=data.get("payload", "").encode("utf-8", errors="surrogateescape"),
            priority=int(data.get("priority", 0)),
            delay=float(data.get("delay", 0.0)),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            created_at=datetime.fromisoformat(created_at) if created_at else _now(),
            processed_at=datetime.fromisoformat(processed_at) if processed_at else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TopicConfig:
    """
    Requested topic layout.

    ``retention`` is in seconds; ``cleanup_policy`` is "delete" or "compact".
    ``config`` carries extra backend-specific entries verbatim.
    """

    partitions: int = 1
    replication_factor: int = 1
    retention: float | None = None
    cleanup_policy: str | None = None
    config: dict[str, str] = field(default_factory=dict)

    def to_entries(self) -> dict[str, str]:
        """Backend config entries (retention.ms, cleanup.policy, extras)."""
        entries = dict(self.config)
        if self.retention is not None:
            entries["retention.ms"] = str(int(self.retention * 1000))
        if self.cleanup_policy:
            entries["cleanup.policy"] = self.cleanup_policy
        return entries


@dataclass
class TopicInfo:
    name: str
    partitions: int = 1
    replication_factor: int = 1
    message_count: int = 0
    size: int = 0
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "partitions": self.partitions,
            "replication_factor": self.replication_factor,
            "message_count": self.message_count,
            "size": self.size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class BrokerStats:
    """
    Snapshot of a driver's counters and gauges.

    Counters never decrease during a driver's lifetime; gauges reflect the
    state at snapshot time.
    """

    messages_published: int = 0
    messages_consumed: int = 0
    messages_failed: int = 0
    jobs_enqueued: int = 0
    jobs_processed: int = 0
    jobs_failed: int = 0
    active_connections: int = 0
    active_subscriptions: int = 0
    topic_count: int = 0
    queue_count: int = 0
    uptime: float = 0.0
    driver_info: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages_published": self.messages_published,
            "messages_consumed": self.messages_consumed,
            "messages_failed": self.messages_failed,
            "jobs_enqueued": self.jobs_enqueued,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
            "active_connections": self.active_connections,
            "active_subscriptions": self.active_subscriptions,
            "topic_count": self.topic_count,
            "queue_count": self.queue_count,
            "uptime": round(self.uptime, 3),
            "driver_info": dict(self.driver_info),
        }


MessageHandler = Callable[[Message], Awaitable[None]]
JobHandler = Callable[[Job], Awaitable[None]]


class Subscription:
    """
    Handle for a background consumer.

    Returned by subscribe, subscribe_with_group and process_jobs. Cancelling
    it stops the consumer task and lets the driver release the backend
    resources attached to it.
    """

    def __init__(
        self,
        key: str,
        topic: str,
        task: asyncio.Task,
        group: str | None = None,
        kind: str = "subscribe",
        on_cancel: Callable[[Subscription], None] | None = None,
    ):
        self.key = key
        self.topic = topic
        self.group = group
        self.kind = kind
        self._task = task
        self._on_cancel = on_cancel
        task.add_done_callback(self._finished)

    def _finished(self, _task: asyncio.Task) -> None:
        if self._on_cancel is not None:
            callback, self._on_cancel = self._on_cancel, None
            callback(self)

    @property
    def task(self) -> asyncio.Task:
        return self._task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def cancel(self) -> None:
        """Stop the consumer and wait for it to finish. Idempotent."""
        if not self._task.done():
            self._task.cancel()
        if asyncio.current_task() is self._task:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    async def wait(self) -> None:
        """Wait until the consumer stops on its own or is cancelled."""
        await asyncio.gather(self._task, return_exceptions=True)

    def __repr__(self) -> str:
        state = "done" if self.done else "running"
        group = f", group={self.group!r}" if self.group else ""
        return f"<Subscription {self.kind} topic={self.topic!r}{group} {state}>"
