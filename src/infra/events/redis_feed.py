"""Redis pub/sub implementation of ChangeFeed.

- One channel per collection: "{prefix}:{collection}"
- Payload: JSON-encoded ChangeEvent.to_message()
- Connection loss surfaces as StoreUnavailableError from the stream;
  messages published while disconnected are not replayed
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.infra.events.feed import ChangeFeed
from src.ports.store_port import ChangeEvent, ChangeStream, matches
from src.shared.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_POLL_TIMEOUT_S = 1.0


class RedisChangeStream(ChangeStream):
    """ChangeStream reading one Redis pub/sub channel."""

    def __init__(
        self,
        pubsub: aioredis.client.PubSub,
        *,
        collection: str,
        filter: dict[str, Any] | None,  # noqa: A002
    ) -> None:
        self._pubsub = pubsub
        self._collection = collection
        self._filter = filter
        self._closed = False

    async def __anext__(self) -> ChangeEvent:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=_POLL_TIMEOUT_S,
                )
            except RedisError as exc:
                raise StoreUnavailableError("redis-feed", f"Change feed lost: {exc}") from exc
            if message is None or message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.from_message(json.loads(message["data"]))
            except (ValueError, KeyError):
                logger.warning("Discarding malformed change message on %s", self._collection)
                continue
            if matches(event.record, self._filter):
                return event
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except RedisError:
            logger.debug("Redis pubsub close failed", exc_info=True)


class RedisChangeFeed(ChangeFeed):
    """Cross-process change feed over Redis pub/sub."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        *,
        channel_prefix: str = "casebooking:changes",
    ) -> None:
        self._redis_url = redis_url
        self._prefix = channel_prefix
        self._client: aioredis.Redis | None = None

    async def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)  # type: ignore[no-untyped-call]
        return self._client

    def channel(self, collection: str) -> str:
        return f"{self._prefix}:{collection}"

    async def publish(self, event: ChangeEvent) -> None:
        client = await self._get_client()
        payload = json.dumps(event.to_message())
        try:
            await client.publish(self.channel(event.collection), payload)
        except RedisError as exc:
            raise StoreUnavailableError("redis-feed", f"Publish failed: {exc}") from exc

    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        client = await self._get_client()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel(collection))
        except RedisError as exc:
            raise StoreUnavailableError("redis-feed", f"Subscribe failed: {exc}") from exc
        return RedisChangeStream(pubsub, collection=collection, filter=filter)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
