"""Fake StorePort strategies for failure and concurrency tests.

- UnavailableStore: every operation raises StoreUnavailableError
- FlakyStore: MemoryStore whose reads/writes can be switched off per collection
- InterleavingStore: MemoryStore that yields to the event loop before each
  operation, so concurrent tasks interleave deterministically
"""

from __future__ import annotations

import asyncio
from typing import Any

from src.infra.store.memory import MemoryStore
from src.ports.store_port import ChangeStream, Record, StorePort
from src.shared.errors import StoreUnavailableError


class UnavailableStore(StorePort):
    """A store that is never reachable."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self) -> StoreUnavailableError:
        self.calls += 1
        return StoreUnavailableError("fake", "Store is down")

    async def get(self, collection: str, filter: dict[str, Any] | None = None) -> list[Record]:  # noqa: A002
        raise self._fail()

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        raise self._fail()

    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        raise self._fail()

    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        raise self._fail()


class FlakyStore(MemoryStore):
    """MemoryStore with per-collection outages."""

    def __init__(self) -> None:
        super().__init__()
        self.down: set[str] = set()

    def _check(self, collection: str) -> None:
        if collection in self.down:
            raise StoreUnavailableError("fake", f"{collection} is down")

    async def get(self, collection: str, filter: dict[str, Any] | None = None) -> list[Record]:  # noqa: A002
        self._check(collection)
        return await super().get(collection, filter)

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        self._check(collection)
        return await super().get_by_id(collection, record_id)

    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        self._check(collection)
        return await super().put(
            collection, record_id, patch, expected_version=expected_version
        )


class InterleavingStore(MemoryStore):
    """MemoryStore that yields before every read and write."""

    async def get(self, collection: str, filter: dict[str, Any] | None = None) -> list[Record]:  # noqa: A002
        await asyncio.sleep(0)
        return await super().get(collection, filter)

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        await asyncio.sleep(0)
        return await super().get_by_id(collection, record_id)

    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        await asyncio.sleep(0)
        return await super().put(
            collection, record_id, patch, expected_version=expected_version
        )
