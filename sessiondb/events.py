from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any

from .db import now_ms

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGES = "new_messages"
EVENT_WRITER_CHANGED = "writer_changed"
EVENT_COLLECT_FINISHED = "collect_finished"

DEFAULT_QUEUE_SIZE = 1000


@dataclass
class SessionEvent:
    kind: str
    session_id: str | None = None
    path: str | None = None
    count: int = 0
    message_ids: list[int] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)


class EventBus:
    """Fan-out of ingestion events to subscriber queues.

    Publishing never blocks: a subscriber whose queue is full misses the event
    and its `dropped` counter grows.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, queue.Queue[SessionEvent]] = {}
        self._dropped: dict[int, int] = {}
        self._next_id = 1

    def subscribe(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> tuple[int, queue.Queue[SessionEvent]]:
        with self._lock:
            subscription_id = self._next_id
            self._next_id += 1
            channel: queue.Queue[SessionEvent] = queue.Queue(maxsize=maxsize)
            self._subscribers[subscription_id] = channel
            self._dropped[subscription_id] = 0
        return subscription_id, channel

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            self._dropped.pop(subscription_id, None)
            return self._subscribers.pop(subscription_id, None) is not None

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def dropped(self, subscription_id: int) -> int:
        with self._lock:
            return self._dropped.get(subscription_id, 0)

    def publish(self, event: SessionEvent) -> int:
        """Deliver to every subscriber; returns how many received it."""

        with self._lock:
            subscribers = list(self._subscribers.items())
        delivered = 0
        for subscription_id, channel in subscribers:
            try:
                channel.put_nowait(event)
            except queue.Full:
                with self._lock:
                    if subscription_id in self._dropped:
                        self._dropped[subscription_id] += 1
                logger.debug("event queue full for subscriber %s", subscription_id)
                continue
            delivered += 1
        return delivered
