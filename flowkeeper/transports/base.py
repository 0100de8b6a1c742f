"""Event stream transports carrying :class:`PlatformEvent` between processes."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import PlatformEvent

RawMessageT = TypeVar("RawMessageT")


class Lifespan:
    """Tracks whether a subscription opened with ``lifespan`` seconds is over."""

    def __init__(self, seconds: Optional[float]) -> None:
        self._loop = asyncio.get_running_loop()
        self._deadline = None if seconds is None else self._loop.time() + seconds

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._loop.time() >= self._deadline


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """A queue of platform events per topic.

    Consumers receive ``(raw_message, event)`` pairs and must settle each one
    with :meth:`ack` or :meth:`nack`. Delivery is at least once: a nacked
    event may be seen again by any subscriber of the topic.
    """

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: PlatformEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, PlatformEvent]]:
        """Yield events published to ``topic``.

        Stops once ``lifespan`` seconds have passed; runs forever when it is
        None.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give up on ``raw_message``; put it back on its topic if ``requeue``."""
        raise NotImplementedError
