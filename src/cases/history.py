"""History Ledger - append-only status and amendment history per case.

Entries are keyed "{case_id}:{sequence}" so appending the same entry twice
(e.g. when flushing a case's in-row outbox after a crash) is a no-op.
Ordering is by the per-case sequence number, never by timestamp.

This module intentionally has NO update/delete operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.cases.records import entry_from_record, entry_to_record, history_entry_id
from src.ports.store_port import CASE_AMENDMENTS, CASE_STATUS_HISTORY
from src.shared.errors import StaleStateError
from src.shared.types import AmendmentHistoryEntry, HistoryEntry, StatusHistoryEntry

if TYPE_CHECKING:
    from src.ports.store_port import StorePort


def collection_for(entry: HistoryEntry) -> str:
    if isinstance(entry, StatusHistoryEntry):
        return CASE_STATUS_HISTORY
    return CASE_AMENDMENTS


class HistoryLedger:
    """Append-only ledger over case_status_history and case_amendments."""

    def __init__(self, store: StorePort) -> None:
        self._store = store

    async def append(self, case_id: str, entry: HistoryEntry) -> bool:
        """Append one entry. Returns False if it was already present.

        Raises:
            ValueError: entry belongs to another case.
            StoreUnavailableError: Store unreachable.
        """
        if entry.case_id != case_id:
            msg = f"History entry for {entry.case_id} appended to {case_id}"
            raise ValueError(msg)
        try:
            await self._store.put(
                collection_for(entry),
                history_entry_id(case_id, entry.sequence),
                entry_to_record(entry),
                expected_version=0,
            )
        except StaleStateError:
            return False
        return True

    async def contains(self, entry: HistoryEntry) -> bool:
        record = await self._store.get_by_id(
            collection_for(entry),
            history_entry_id(entry.case_id, entry.sequence),
        )
        return record is not None

    async def list_status_history(self, case_id: str) -> list[StatusHistoryEntry]:
        rows = await self._store.get(CASE_STATUS_HISTORY, {"case_id": case_id})
        entries = [entry_from_record(r) for r in rows]
        return sorted(
            (e for e in entries if isinstance(e, StatusHistoryEntry)),
            key=lambda e: e.sequence,
        )

    async def list_amendments(self, case_id: str) -> list[AmendmentHistoryEntry]:
        rows = await self._store.get(CASE_AMENDMENTS, {"case_id": case_id})
        entries = [entry_from_record(r) for r in rows]
        return sorted(
            (e for e in entries if isinstance(e, AmendmentHistoryEntry)),
            key=lambda e: e.sequence,
        )
