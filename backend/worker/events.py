"""Execution lifecycle events.

The supervisor publishes one event per lifecycle transition. Subscribers
each get a bounded queue; publishing never blocks, and when a
subscriber falls behind its oldest pending events are dropped.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from workflow.state import utcnow_iso

logger = structlog.get_logger(__name__)


class LifecycleEventType(str, Enum):
    STARTED = "execution.started"
    STEP_COMPLETED = "execution.step_completed"
    COMPLETED = "execution.completed"
    FAILED = "execution.failed"
    CANCELLED = "execution.cancelled"


@dataclass
class LifecycleEvent:
    type: LifecycleEventType
    execution_id: str
    chain_id: str
    trigger_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "chain_id": self.chain_id,
            "trigger_id": self.trigger_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventBus:
    """
    Fan-out of lifecycle events to subscriber queues.

    Usage:
        queue = bus.subscribe()
        event = await queue.get()
        ...
        bus.unsubscribe(queue)
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.published = 0
        self.dropped = 0

    def subscribe(self, max_queue_size: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size or self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: LifecycleEvent) -> None:
        """Deliver to every subscriber without waiting."""
        self.published += 1
        for queue in list(self._subscribers):
            if queue.full():
                # Slow consumer: drop its oldest event to make room
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                self.dropped += 1
                logger.debug("Lifecycle event dropped", execution_id=event.execution_id, type=event.type.value)
            queue.put_nowait(event)

    def stats(self) -> dict:
        return {
            "subscribers": self.subscriber_count,
            "published": self.published,
            "dropped": self.dropped,
        }
