"""
Delayed-delivery building blocks.

Each driver emulates delayed publishing with a named strategy object
implementing DelayStrategy:

- TimerDelayStrategy (here): event-loop timers, used by the memory driver
- DelayedExchangeStrategy / DeadLetterTTLStrategy (drivers.rabbitmq)
- SortedSetDelayStrategy (drivers.redis)
- SatelliteTopicStrategy (drivers.kafka)

DelayDispatcher runs pollers that move due entries out of a backend's
parking area, with at most one poller per key.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Protocol

from brokerz.core.logger import get_logger
from brokerz.core.types import Message

logger = get_logger(__name__)

SpawnFn = Callable[[Coroutine[Any, Any, Any], str], asyncio.Task]


class DelayStrategy(Protocol):
    name: str

    async def schedule(self, topic: str, message: Message, delay: float) -> None:
        """Make ``message`` visible on ``topic`` no earlier than ``now + delay``."""
        ...


class TimerDelayStrategy:
    """Park the message in a sleeping task, then deliver it."""

    name = "timer"

    def __init__(self, deliver: Callable[[str, Message], Awaitable[None]], spawn: SpawnFn):
        self._deliver = deliver
        self._spawn = spawn

    async def schedule(self, topic: str, message: Message, delay: float) -> None:
        self._spawn(self._fire(topic, message, delay), f"delay-{message.id}")

    async def _fire(self, topic: str, message: Message, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._deliver(topic, message)
        except Exception as e:
            logger.error(f"Delayed delivery of {message.id} to {topic} failed: {e}")


class DelayDispatcher:
    """
    Keyed poller registry.

    ``poll(key)`` is awaited every ``interval`` seconds for each running key
    and returns how many entries it dispatched. When a poll dispatches a full
    batch the next poll starts without waiting.
    """

    def __init__(
        self,
        poll: Callable[[str], Awaitable[int]],
        spawn: SpawnFn,
        interval: float = 1.0,
        batch_size: int = 100,
        label: str = "delay",
    ):
        self._poll = poll
        self._spawn = spawn
        self.interval = interval
        self.batch_size = batch_size
        self.label = label
        self._tasks: dict[str, asyncio.Task] = {}

    def ensure(self, key: str) -> bool:
        """Start the poller for ``key`` unless one is running. Returns True if started."""
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return False
        task = self._spawn(self._run(key), f"{self.label}-{key}")
        self._tasks[key] = task
        return True

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    @property
    def keys(self) -> list[str]:
        return [k for k, t in self._tasks.items() if not t.done()]

    async def stop(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop_all(self) -> None:
        for key in list(self._tasks):
            await self.stop(key)

    async def _run(self, key: str) -> None:
        logger.debug(f"{self.label} dispatcher started for {key}")
        try:
            while True:
                try:
                    dispatched = await self._poll(key)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"{self.label} dispatcher poll failed for {key}: {e}")
                    dispatched = 0
                if dispatched < self.batch_size:
                    await asyncio.sleep(self.interval)
        finally:
            logger.debug(f"{self.label} dispatcher stopped for {key}")
