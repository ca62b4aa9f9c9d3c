"""In-memory implementation of StorePort.

Local fallback store: used when no database is configured and in tests.
- Records are deep-copied on the way in and out (no aliasing)
- Versioned puts are compare-and-set under one asyncio.Lock
- Every put publishes a ChangeEvent on the attached ChangeFeed
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from src.infra.events.feed import ChangeFeed, LocalChangeFeed
from src.ports.store_port import (
    ChangeEvent,
    ChangeKind,
    ChangeStream,
    Record,
    StorePort,
    matches,
)
from src.shared.errors import StaleStateError


class MemoryStore(StorePort):
    """Dict-backed store with optimistic versioning and change events."""

    def __init__(self, *, feed: ChangeFeed | None = None) -> None:
        self._collections: dict[str, dict[str, Record]] = {}
        self._lock = asyncio.Lock()
        self._feed = feed or LocalChangeFeed()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    async def get(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> list[Record]:
        rows = self._collections.get(collection, {})
        return [copy.deepcopy(r) for r in rows.values() if matches(r, filter)]

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        row = self._collections.get(collection, {}).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        async with self._lock:
            rows = self._collections.setdefault(collection, {})
            current = rows.get(record_id)
            current_version = current["version"] if current is not None else 0

            if expected_version is not None and expected_version != current_version:
                raise StaleStateError(
                    collection,
                    record_id,
                    expected_version=expected_version,
                    actual_version=current_version,
                )

            record: Record = {**(current or {}), **copy.deepcopy(patch)}
            record["id"] = record_id
            record["version"] = current_version + 1
            rows[record_id] = record
            snapshot = copy.deepcopy(record)

        kind = ChangeKind.INSERT if current is None else ChangeKind.UPDATE
        await self._feed.publish(ChangeEvent(kind=kind, collection=collection, record=snapshot))
        return copy.deepcopy(snapshot)

    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        return await self._feed.subscribe(collection, filter)

    def count(self, collection: str) -> int:
        """Number of records in a collection."""
        return len(self._collections.get(collection, {}))
