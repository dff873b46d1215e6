"""Typed engine events and the in-process event bus.

The orchestrator and dispatcher publish events onto an asyncio.Queue; a
single consumer task fans each event out to subscribers (logging,
metrics, the external EventPublisher). Publishing never blocks and
never fails the pipeline: a full queue drops the event with a warning,
and subscriber errors are logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Protocol

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "price_sync"


@dataclass(frozen=True)
class Event:
    """Base class for engine events."""

    name: ClassVar[str] = "event"

    @property
    def topic(self) -> str:
        return f"{TOPIC_PREFIX}.{self.name}"

    def to_payload(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return asdict(self)


@dataclass(frozen=True)
class JobStarted(Event):
    name: ClassVar[str] = "job_started"

    job_id: str
    tenant_id: str
    cadence: str


@dataclass(frozen=True)
class JobCompleted(Event):
    """Emitted for every terminal job, completed or failed."""

    name: ClassVar[str] = "job_completed"

    job_id: str
    tenant_id: str
    cadence: str
    status: str
    total: int = 0
    processed: int = 0
    updated: int = 0
    failed: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ConflictDetected(Event):
    name: ClassVar[str] = "conflict_detected"

    conflict_id: str
    tenant_id: str
    conflict_type: str
    severity: str
    entity_id: str
    urgent: bool = False
    requires_manual: bool = False


@dataclass(frozen=True)
class ConflictResolved(Event):
    name: ClassVar[str] = "conflict_resolved"

    conflict_id: str
    tenant_id: str
    conflict_type: str
    resolved_by: str
    strategy: str | None = None
    chosen_source: str | None = None


class EventPublisher(Protocol):
    """External publisher (message broker, notifier). Fire-and-forget."""

    def publish(self, topic: str, payload: dict[str, Any]) -> Awaitable[None] | None: ...


Subscriber = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Queue-backed event channel with a single consumer task."""

    def __init__(self, maxsize: int = 10000) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task[None] | None = None

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register a subscriber (sync or async callable)."""
        self._subscribers.append(subscriber)

    def publish(self, event: Event) -> None:
        """Enqueue an event without blocking."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping %s", event.topic)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _dispatch(self, event: Event) -> None:
        for subscriber in self._subscribers:
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event subscriber failed for %s", event.topic)

    async def run(self) -> None:
        """Consume events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start the consumer task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="pricesync-event-bus")

    async def drain(self) -> None:
        """Deliver every queued event before returning."""
        if self._task is not None and not self._task.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        """Drain pending events and stop the consumer task."""
        await self.drain()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


def forward_to(publisher: EventPublisher) -> Subscriber:
    """Build a subscriber that forwards events to an external publisher.

    Publisher failures are logged here so they never reach the bus.
    """

    async def _forward(event: Event) -> None:
        try:
            result = publisher.publish(event.topic, event.to_payload())
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Failed to publish %s", event.topic, exc_info=True)

    return _forward


def log_event(event: Event) -> None:
    """Logging subscriber."""
    if isinstance(event, JobCompleted) and event.status == "failed":
        logger.warning(
            "Job %s (%s) for tenant %s failed: %s",
            event.job_id,
            event.cadence,
            event.tenant_id,
            event.error,
        )
    elif isinstance(event, ConflictDetected) and event.urgent:
        logger.warning(
            "Urgent %s conflict %s on %s (severity %s)",
            event.conflict_type,
            event.conflict_id,
            event.entity_id,
            event.severity,
        )
    else:
        logger.debug("%s %s", event.topic, event.to_payload())
