"""Fan-out of change notifications to live-update subscribers."""

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HISTORY = "history"
SESSION = "session"
PROJECT = "project"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # HISTORY | SESSION | PROJECT
    key: str = ""  # session id or project directory name


class EventBroker:
    """Delivers every published event to each subscriber's queue.

    Queues are bounded; a subscriber that falls behind loses its oldest
    events rather than blocking the publisher.
    """

    def __init__(self, max_queue: int = 256):
        self._max_queue = max_queue
        self._subscribers: set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: ChangeEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.debug("Dropped oldest event for a slow subscriber")
            queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
