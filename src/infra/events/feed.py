"""Change feed: fan-out of store change events to subscribers.

- Stores publish one ChangeEvent per successful put
- LocalChangeFeed delivers in-process via one asyncio.Queue per subscriber
- RedisChangeFeed (redis_feed.py) delivers across processes via pub/sub
- Delivery is best-effort; a subscriber that falls behind is dropped and
  its stream raises StoreUnavailableError so the consumer resyncs
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from src.ports.store_port import ChangeEvent, ChangeStream, matches
from src.shared.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_CLOSED = object()
_OVERFLOW = object()


class ChangeFeed(ABC):
    """Publish/subscribe transport for store change events."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None: ...

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream: ...


class QueueChangeStream(ChangeStream):
    """ChangeStream backed by an asyncio.Queue."""

    def __init__(
        self,
        *,
        collection: str,
        filter: dict[str, Any] | None,  # noqa: A002
        feed: LocalChangeFeed,
        maxsize: int,
    ) -> None:
        self.collection = collection
        self.filter = filter
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def offer(self, event: ChangeEvent) -> None:
        if self._closed or event.collection != self.collection:
            return
        if not matches(event.record, self.filter):
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Change stream for %s overflowed; dropping subscriber",
                self.collection,
            )
            self._feed.detach(self)
            self._closed = True
            self._queue = asyncio.Queue()
            self._queue.put_nowait(_OVERFLOW)

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _OVERFLOW:
            raise StoreUnavailableError("change-feed", "Change stream overflowed")
        return item  # type: ignore[no-any-return]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.detach(self)
        # Undelivered events are dropped so the sentinel always fits.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)


class LocalChangeFeed(ChangeFeed):
    """In-process change feed for the in-memory store and tests."""

    def __init__(self, *, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._streams: list[QueueChangeStream] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._streams)

    async def publish(self, event: ChangeEvent) -> None:
        for stream in list(self._streams):
            stream.offer(event)

    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        stream = QueueChangeStream(
            collection=collection,
            filter=filter,
            feed=self,
            maxsize=self._queue_size,
        )
        self._streams.append(stream)
        return stream

    def detach(self, stream: QueueChangeStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)
