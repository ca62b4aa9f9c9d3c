"""PostgreSQL implementation of StorePort via SQLAlchemy.

- One JSONB document table (store_records) partitioned by collection
- Equality filters use JSONB containment (data @> filter), GIN-indexed
- Versioned puts lock the row (SELECT ... FOR UPDATE) and compare
  version inside the transaction; a concurrent first insert surfaces as
  IntegrityError and is reported as StaleStateError
- Change events are published on the ChangeFeed after commit
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from src.infra.models import StoreRecord
from src.ports.store_port import ChangeEvent, ChangeKind, ChangeStream, Record, StorePort
from src.shared.errors import CaseBookingError, StaleStateError, StoreUnavailableError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.infra.events.feed import ChangeFeed

logger = logging.getLogger(__name__)

_UNAVAILABLE = (sa_exc.OperationalError, sa_exc.InterfaceError, OSError)
_MANAGED_KEYS = frozenset({"id", "version"})


def _row_to_record(row: StoreRecord) -> Record:
    record = dict(row.data or {})
    record["id"] = row.record_id
    record["version"] = row.version
    return record


class SqlStore(StorePort):
    """PostgreSQL-backed StorePort with a pluggable change feed."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed

    async def get(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> list[Record]:
        stmt = sa.select(StoreRecord).where(StoreRecord.collection == collection)
        if filter:
            stmt = stmt.where(StoreRecord.data.contains(filter))
        try:
            async with self._session_factory() as session:
                result = await session.scalars(stmt)
                rows = result.all()
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("postgres", f"Read failed: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        stmt = sa.select(StoreRecord).where(
            StoreRecord.collection == collection,
            StoreRecord.record_id == record_id,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("postgres", f"Read failed: {exc}") from exc
        return _row_to_record(row) if row is not None else None

    async def put(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        expected_version: int | None = None,
    ) -> Record:
        clean = {k: v for k, v in patch.items() if k not in _MANAGED_KEYS}
        stmt = (
            sa.select(StoreRecord)
            .where(
                StoreRecord.collection == collection,
                StoreRecord.record_id == record_id,
            )
            .with_for_update()
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
                current_version = row.version if row is not None else 0

                if expected_version is not None and expected_version != current_version:
                    raise StaleStateError(
                        collection,
                        record_id,
                        expected_version=expected_version,
                        actual_version=current_version,
                    )

                if row is None:
                    row = StoreRecord(
                        collection=collection,
                        record_id=record_id,
                        version=1,
                        data={**clean, "id": record_id},
                    )
                    session.add(row)
                    kind = ChangeKind.INSERT
                else:
                    # Reassign the whole dict: JSONB columns do not track in-place mutation
                    row.data = {**(row.data or {}), **clean}
                    row.version = current_version + 1
                    row.updated_at = datetime.now(UTC)
                    kind = ChangeKind.UPDATE
                await session.commit()
                record = _row_to_record(row)
        except sa_exc.IntegrityError as exc:
            raise StaleStateError(
                collection,
                record_id,
                expected_version=expected_version,
            ) from exc
        except CaseBookingError:
            raise
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("postgres", f"Write failed: {exc}") from exc

        try:
            await self._feed.publish(ChangeEvent(kind=kind, collection=collection, record=record))
        except StoreUnavailableError:
            # Write is committed; subscribers recover through TTL refresh.
            logger.warning(
                "Change event for %s/%s not published",
                collection,
                record_id,
                exc_info=True,
            )
        return record

    async def subscribe(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> ChangeStream:
        return await self._feed.subscribe(collection, filter)
