"""
Event Streaming - In-memory pub/sub for ImageRepository events.

The reconciler publishes one event per cycle outcome (like a Kubernetes event
recorder); the HTTP API publishes record changes. Subscribers consume them as
Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import ImageRepository, format_time

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of repository events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


class Severity(Enum):
    """Event severity, as in Kubernetes events."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class RepositoryEvent:
    """Event emitted when an ImageRepository changes or is reconciled."""

    event_type: EventType
    namespace: str
    name: str
    severity: Severity = Severity.NORMAL
    reason: str = ""
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        payload = {
            "event_type": self.event_type.value,
            "namespace": self.namespace,
            "name": self.name,
            "severity": self.severity.value,
            "reason": self.reason,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        return f"event: {self.event_type.value}\ndata: {json.dumps(payload)}\n\n"

    @classmethod
    def from_repository(
        cls,
        event_type: EventType,
        repo: ImageRepository,
        severity: Severity = Severity.NORMAL,
        reason: str = "",
        message: str = "",
    ) -> "RepositoryEvent":
        """Create an event carrying the record's current document."""
        return cls(
            event_type=event_type,
            namespace=repo.namespace,
            name=repo.name,
            severity=severity,
            reason=reason,
            message=message,
            data=repo.to_dict(),
            timestamp=format_time(datetime.now(timezone.utc)),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    A ``None`` sentinel on the queue stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[RepositoryEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[RepositoryEvent]:
        return self

    async def __anext__(self) -> RepositoryEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Each subscriber gets its own bounded ``asyncio.Queue``; publishing never
    blocks, and events for a full queue are dropped with a warning.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish(self, event: RepositoryEvent) -> None:
        """Publish an event to all subscribers."""
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    def subscribe(
        self,
        filter_fn: Optional[Callable[[RepositoryEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate; only matching events are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue
        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber.

        Sends a ``None`` sentinel so the subscription's iterator terminates.
        """
        queue = self._subscribers.pop(subscriber_id, None)
        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
