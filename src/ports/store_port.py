"""StorePort - the backing store contract consumed by the core.

Exactly three operation shapes, regardless of transport:
    get(collection, filter) / get_by_id(collection, id)
    put(collection, id, patch, expected_version=...)
    subscribe(collection, filter) -> stream of change events

Records are plain JSON-serializable dicts. Every record carries "id" and a
store-maintained "version" that starts at 1 and is bumped by every put.

Implementations (Strategy):
    SqlStore    - PostgreSQL document table + Redis change feed
    MemoryStore - in-process dict + local change feed
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

# Collections consumed by the core
PERMISSIONS = "permissions"
CASES = "cases"
CASE_STATUS_HISTORY = "case_status_history"
CASE_AMENDMENTS = "case_amendments"
AUDIT_LOG = "audit_log"
CASE_COUNTERS = "case_counters"

Record = dict[str, Any]


class ChangeKind(enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """One change notification delivered by subscribe()."""

    kind: ChangeKind
    collection: str
    record: Record

    def to_message(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "collection": self.collection, "record": self.record}

    @classmethod
    def from_message(cls, data: dict[str, Any]) -> ChangeEvent:
        return cls(
            kind=ChangeKind(data["kind"]),
            collection=data["collection"],
            record=data["record"],
        )


def matches(record: Record, filter: dict[str, Any] | None) -> bool:  # noqa: A002
    """Equality filter shared by all store implementations."""
    if not filter:
        return True
    return all(record.get(key) == value for key, value in filter.items())


class ChangeStream(ABC):
    """Async iterator of ChangeEvent; close() releases the subscription.

    Iteration raises StoreUnavailableError if the underlying feed drops;
    events published while disconnected are lost, so consumers must
    re-read state after resubscribing.
    """

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    @abstractmethod
    async def __anext__(self) -> ChangeEvent: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def __aenter__(self) -> ChangeStream:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class StorePort(ABC):
    """Port: backing store get/put/subscribe."""

    @abstractmethod
    async def get(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> list[Record]:
        """Return all records of a collection matching an equality filter.

        Raises:
            StoreUnavailableError: Store unreachable.
        """

    @abstractmethod
    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        """Return one record, or None if absent.

        Raises:
            StoreUnavailableError: Store unreachable.
        """

    @abstractmethod
    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        """Upsert: merge patch into the record (creating it if absent).

        Args:
            collection: Target collection.
            record_id: Record id.
            patch: Fields to set; "id" and "version" are managed by the store.
            expected_version: None for last-writer-wins; otherwise the write
                succeeds only if the stored version equals it (0 = must not
                exist yet).

        Returns:
            The full record after the write.

        Raises:
            StaleStateError: expected_version did not match.
            StoreUnavailableError: Store unreachable.
        """

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        """Open a change stream for records of a collection matching filter.

        Raises:
            StoreUnavailableError: Change feed unreachable.
        """
