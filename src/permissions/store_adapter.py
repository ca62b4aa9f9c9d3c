"""Permission Store Adapter - maps matrix cells onto the permissions collection.

Record shape (one per overridden cell):
    {"id": "{action}:{role}", "action": str, "role": str, "allowed": bool,
     "updated_by": str, "updated_at": ISO-8601}

Rows naming an unknown role or action (e.g. left over from an older
release) are skipped with a warning. admin rows are never read or
written: admin is resolved in code.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.infra.auth.rbac import PermissionAction, Role, resolve_action, resolve_role
from src.ports.store_port import PERMISSIONS
from src.shared.types import PermissionEntry

if TYPE_CHECKING:
    from src.ports.store_port import ChangeStream, Record, StorePort

logger = logging.getLogger(__name__)


def permission_record_id(action: PermissionAction, role: Role) -> str:
    return f"{action.value}:{role.value}"


def record_to_entry(record: Record) -> PermissionEntry | None:
    """Parse one permissions row, or None if it names an unknown cell."""
    action = resolve_action(str(record.get("action", "")))
    role = resolve_role(str(record.get("role", "")))
    if action is None or role is None or role is Role.ADMIN:
        logger.warning("Ignoring permissions row %s", record.get("id"))
        return None
    return PermissionEntry(action=action, role=role, allowed=bool(record.get("allowed")))


class PermissionStoreAdapter:
    """Reads and writes matrix overrides through the StorePort."""

    def __init__(self, store: StorePort) -> None:
        self._store = store

    async def fetch_all(self) -> list[PermissionEntry]:
        """Return every stored override.

        Raises:
            StoreUnavailableError: Store unreachable.
        """
        rows = await self._store.get(PERMISSIONS)
        entries = []
        for row in rows:
            entry = record_to_entry(row)
            if entry is not None:
                entries.append(entry)
        return entries

    async def write(self, entry: PermissionEntry, *, updated_by: str) -> None:
        """Persist one cell, last-writer-wins.

        Raises:
            StoreUnavailableError: Store unreachable.
        """
        await self._store.put(
            PERMISSIONS,
            permission_record_id(entry.action, entry.role),
            {
                "action": entry.action.value,
                "role": entry.role.value,
                "allowed": entry.allowed,
                "updated_by": updated_by,
                "updated_at": datetime.now(UTC).isoformat(),
            },
        )

    async def subscribe(self) -> ChangeStream:
        """Open a change stream over the whole permissions collection."""
        return await self._store.subscribe(PERMISSIONS)
