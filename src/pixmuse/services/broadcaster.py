"""In-memory fan-out of job progress to live subscribers.

Events are delivered only to subscriptions that exist at publish time; there
is no history and no replay. A subscriber that disconnects simply misses
events; the final job status stays queryable from the database.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID

import structlog

from pixmuse.models.job import JobStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: UUID
    percent: int
    message: str = ""
    status: JobStatus = JobStatus.RUNNING
    terminal: bool = False
    detail: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": str(self.job_id),
            "percent": self.percent,
            "status": self.status.value,
        }
        if self.message:
            data["message"] = self.message
        data.update(self.detail)
        return data


class Subscription:
    """Live feed of events for one job.

    Use as an async context manager (or call close()) so the broadcaster
    drops its reference when the consumer goes away. Iterating yields events
    until the terminal event has been delivered.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", job_id: UUID, max_pending: int):
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_pending)
        self._last_percent = -1
        self._finished = False
        self.closed = False

    def _deliver(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        # Keep each subscriber's view non-decreasing
        if event.terminal:
            if event.percent < self._last_percent:
                event = replace(event, percent=self._last_percent)
        elif event.percent < self._last_percent:
            return False
        if self._queue.full():
            if not event.terminal:
                return False
            # Make room so the terminal event is never lost to a slow reader
            self._queue.get_nowait()
        self._queue.put_nowait(event)
        self._last_percent = event.percent
        return True

    async def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None if timeout elapses first."""
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event.terminal:
            self._finished = True
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster._unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ProgressBroadcaster:
    """Per-job publish/subscribe registry, owned by the application instance."""

    def __init__(self, max_pending: int = 256):
        self._max_pending = max_pending
        self._subscribers: dict[UUID, set[Subscription]] = {}

    def subscribe(self, job_id: UUID) -> Subscription:
        subscription = Subscription(self, job_id, self._max_pending)
        self._subscribers.setdefault(job_id, set()).add(subscription)
        logger.debug("progress.subscribed", job_id=str(job_id))
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.job_id]
        logger.debug("progress.unsubscribed", job_id=str(subscription.job_id))

    def subscriber_count(self, job_id: UUID | None = None) -> int:
        if job_id is None:
            return sum(len(subs) for subs in self._subscribers.values())
        return len(self._subscribers.get(job_id, ()))

    def _fan_out(self, event: ProgressEvent) -> int:
        subscribers = list(self._subscribers.get(event.job_id, ()))
        return sum(1 for subscription in subscribers if subscription._deliver(event))

    def publish(self, job_id: UUID, percent: int, message: str = "") -> int:
        """Deliver a progress event to current subscribers.

        Returns:
            Number of subscribers that received the event
        """
        return self._fan_out(ProgressEvent(job_id=job_id, percent=percent, message=message))

    def publish_terminal(
        self, job_id: UUID, status: JobStatus, percent: int, detail: dict[str, Any] | None = None
    ) -> int:
        """Deliver the final event for a job; streams end after it."""
        event = ProgressEvent(
            job_id=job_id, percent=percent, status=status, terminal=True, detail=detail or {}
        )
        return self._fan_out(event)
