"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import PlatformEvent
from .base import BaseTransport, Lifespan

logger = logging.getLogger(__name__)

RawEvent = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Simple in-process queue per topic.

    Raw messages are ``(topic, json)`` pairs so that a nack can put the event
    back on the queue it came from.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, event: PlatformEvent) -> None:
        async with self._lock:
            self._queues[topic].append(event.to_json())

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, PlatformEvent]]:
        window = Lifespan(lifespan)
        while not window.expired:
            async with self._lock:
                payload = self._queues[topic].popleft() if self._queues[topic] else None
            if payload is not None:
                yield (topic, payload), PlatformEvent.from_json(payload)
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment; the event was removed when it was yielded."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, payload = raw_message
        logger.debug(f"Requeueing event on {topic}")
        async with self._lock:
            self._queues[topic].append(payload)
