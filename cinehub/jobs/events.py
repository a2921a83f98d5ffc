"""Lifecycle events emitted by the cache queue and the bus that carries them.

The queue publishes into an :class:`EventBus`; observers such as the WebSocket
broadcaster hold a :class:`Subscription` and drain it at their own pace. The
queue never learns who is listening or over which transport.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from .models import CacheJob, QueueStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobEnqueued:
    kind: ClassVar[str] = "job-enqueued"
    job: CacheJob
    stats: QueueStats


@dataclass(frozen=True, slots=True)
class JobStatusChanged:
    kind: ClassVar[str] = "job-status-changed"
    job: CacheJob


@dataclass(frozen=True, slots=True)
class JobCompleted:
    kind: ClassVar[str] = "job-completed"
    job: CacheJob
    delivery_url: str
    public_id: str


@dataclass(frozen=True, slots=True)
class JobFailed:
    kind: ClassVar[str] = "job-failed"
    job: CacheJob
    error: str


CacheEvent = Union[JobEnqueued, JobStatusChanged, JobCompleted, JobFailed]


class Subscription:
    """A single observer's channel on the bus."""

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: asyncio.Queue[CacheEvent] = asyncio.Queue()
        self.closed = False

    def deliver(self, event: CacheEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> CacheEvent:
        return await self._queue.get()

    def get_nowait(self) -> Optional[CacheEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[CacheEvent]:
        events: list[CacheEvent] = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: CacheEvent) -> None:
        logger.debug("Publishing %s for job %s", event.kind, event.job.id)
        for subscription in list(self._subscriptions):
            subscription.deliver(event)
