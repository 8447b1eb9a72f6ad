"""
Typed event channel for job status changes.

The JobManager publishes one JobEvent per applied state change; the UI
and the notification trigger subscribe to the channel. Consumers must
tolerate repeated identical events, since resuming after a restart
re-emits the current state of every active job.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from .errors import ErrorKind
from .types import JobRecord, JobStatus


@dataclass
class JobEvent:
    """A single status-change notification."""
    job_id: str
    owner_id: str
    old_status: JobStatus | None
    new_status: JobStatus
    progress: float
    error_kind: ErrorKind | None = None
    result_ref: str | None = None
    should_notify: bool = False
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    @property
    def status(self) -> JobStatus:
        return self.new_status

    @classmethod
    def from_record(cls, record: JobRecord, old_status: JobStatus | None) -> JobEvent:
        return cls(
            job_id=record.job_id,
            owner_id=record.owner_id,
            old_status=old_status,
            new_status=record.status,
            progress=record.progress,
            error_kind=record.error_kind,
            result_ref=record.result_ref,
            should_notify=record.should_notify,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "old_status": self.old_status.value if self.old_status else None,
            "status": self.new_status.value,
            "progress": self.progress,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "result_ref": self.result_ref,
            "should_notify": self.should_notify,
            "timestamp": self.timestamp,
        }


@dataclass
class EventSubscription:
    """Subscription to job events."""
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str | None = None
    owner_id: str | None = None

    def matches(self, event: JobEvent) -> bool:
        if self.job_id and event.job_id != self.job_id:
            return False
        if self.owner_id and event.owner_id != self.owner_id:
            return False
        return True


class EventChannel(ABC):
    """Abstract channel between the JobManager and its event sinks."""

    @abstractmethod
    async def publish(self, event: JobEvent) -> None:
        """Deliver ``event`` to every subscription whose filter accepts it."""
        ...

    @abstractmethod
    def subscribe(
        self,
        job_id: str | None = None,
        owner_id: str | None = None,
    ) -> EventSubscription:
        """Register a filtered subscription."""
        ...

    @abstractmethod
    def events(self, subscription: EventSubscription) -> AsyncIterator[JobEvent]:
        """Async-iterate the events queued for ``subscription``."""
        ...

    @abstractmethod
    def unsubscribe(self, subscription: EventSubscription) -> None:
        """Stop delivering to ``subscription``."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and release waiting consumers."""
        ...


class InMemoryEventChannel(EventChannel):
    """In-process channel with one bounded asyncio.Queue per subscription.

    When a subscriber's queue is full the oldest event is dropped.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._queues: dict[str, asyncio.Queue[JobEvent | None]] = {}
        self._subscriptions: dict[str, EventSubscription] = {}
        self._max_queue_size = max_queue_size
        self._closed = False

    async def publish(self, event: JobEvent) -> None:
        if self._closed:
            return
        for sub_id, subscription in list(self._subscriptions.items()):
            if not subscription.matches(event):
                continue
            queue = self._queues.get(sub_id)
            if queue is None:
                continue
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    def subscribe(
        self,
        job_id: str | None = None,
        owner_id: str | None = None,
    ) -> EventSubscription:
        subscription = EventSubscription(job_id=job_id, owner_id=owner_id)
        self._subscriptions[subscription.subscription_id] = subscription
        self._queues[subscription.subscription_id] = asyncio.Queue(maxsize=self._max_queue_size)
        return subscription

    async def events(self, subscription: EventSubscription) -> AsyncIterator[JobEvent]:
        """Yield events until the subscription or the channel is closed."""
        queue = self._queues.get(subscription.subscription_id)
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:  # close sentinel
                break
            yield event

    def drain(self, subscription: EventSubscription) -> list[JobEvent]:
        """Return every event queued for a subscription without waiting."""
        queue = self._queues.get(subscription.subscription_id)
        drained: list[JobEvent] = []
        if queue is None:
            return drained
        while not queue.empty():
            event = queue.get_nowait()
            if event is not None:
                drained.append(event)
        return drained

    def unsubscribe(self, subscription: EventSubscription) -> None:
        sub_id = subscription.subscription_id
        self._subscriptions.pop(sub_id, None)
        queue = self._queues.pop(sub_id, None)
        if queue is not None:
            self._put_sentinel(queue)

    async def close(self) -> None:
        self._closed = True
        for queue in self._queues.values():
            self._put_sentinel(queue)
        self._queues.clear()
        self._subscriptions.clear()

    @staticmethod
    def _put_sentinel(queue: asyncio.Queue[JobEvent | None]) -> None:
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(None)


__all__ = [
    "JobEvent",
    "EventSubscription",
    "EventChannel",
    "InMemoryEventChannel",
]
