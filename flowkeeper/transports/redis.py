"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import PlatformEvent
from .base import BaseTransport, Lifespan

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "flowkeeper"

RawEvent = Tuple[str, str]


class RedisTransport(BaseTransport[RawEvent]):
    """Redis list used as a FIFO queue per topic (LPUSH / BRPOP)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[redis.Redis] = client

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{QUEUE_PREFIX}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: PlatformEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, PlatformEvent]]:
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        window = Lifespan(lifespan)
        while not window.expired:
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue

            _, payload = result
            try:
                event = PlatformEvent.from_json(payload)
            except ValidationError as exc:
                logger.error(f"Dropping malformed event on {queue_name}: {exc}")
                continue
            yield (topic, payload), event

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment (BRPOP already removed the message)."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, payload = raw_message
        # RPUSH puts it back at the consuming end of the queue.
        await self._redis.rpush(self.queue_name(topic), payload)
