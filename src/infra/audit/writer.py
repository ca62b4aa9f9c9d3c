"""AuditLogSink - Append-only audit event recording.

Infrastructure layer component. Writes audit events to the audit_log
collection through the StorePort. Enforces:
  - action field is non-empty
  - Append-only: no update/delete operations
  - A failing write never fails the business action that produced it

Two entry points:
    sink.emit(...)               non-blocking, queued, drained in background
    await sink.write_event(...)  synchronous write, raises on store failure

Usage:
    sink = AuditLogSink(store)
    sink.emit(
        actor=actor,
        action="Case Created",
        category=AuditCategory.CASE_MANAGEMENT,
        target=case.reference_number,
        detail={"hospital": case.hospital},
    )
    await sink.close()  # drains pending events
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from src.ports.store_port import AUDIT_LOG
from src.shared.errors import CaseBookingError, ValidationError

if TYPE_CHECKING:
    from src.ports.store_port import Record, StorePort
    from src.shared.types import Actor

logger = logging.getLogger(__name__)


class AuditCategory(enum.Enum):
    AUTHENTICATION = "Authentication"
    CASE_MANAGEMENT = "Case Management"
    STATUS_CHANGE = "Status Change"
    PERMISSION = "Permission"
    DATA_EXPORT = "Data Export"
    DATA_IMPORT = "Data Import"


class AuditStatus(enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit log entry."""

    id: str
    timestamp: datetime
    actor_id: str
    actor_name: str
    actor_role: str
    action: str
    category: AuditCategory
    target: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    status: AuditStatus = AuditStatus.SUCCESS
    country: str | None = None
    department: str | None = None

    def to_record(self) -> Record:
        return {
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "actor_role": self.actor_role,
            "action": self.action,
            "category": self.category.value,
            "target": self.target,
            "detail": self.detail,
            "status": self.status.value,
            "country": self.country,
            "department": self.department,
        }

    @classmethod
    def from_record(cls, record: Record) -> AuditEvent:
        return cls(
            id=record["id"],
            timestamp=datetime.fromisoformat(record["timestamp"]),
            actor_id=record.get("actor_id", ""),
            actor_name=record.get("actor_name", ""),
            actor_role=record.get("actor_role", ""),
            action=record["action"],
            category=AuditCategory(record["category"]),
            target=record.get("target", ""),
            detail=record.get("detail") or {},
            status=AuditStatus(record.get("status", AuditStatus.SUCCESS.value)),
            country=record.get("country"),
            department=record.get("department"),
        )



def _aware(value: datetime) -> datetime:
    """Naive datetimes in filters are taken as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class AuditQuery:
    """Filters for AuditLogSink.query(); unset fields match everything."""

    actor_id: str | None = None
    actor_role: str | None = None
    category: AuditCategory | None = None
    action_contains: str | None = None
    status: AuditStatus | None = None
    country: str | None = None
    department: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None

    def store_filter(self) -> dict[str, Any]:
        """Equality filters the store can evaluate."""
        f: dict[str, Any] = {}
        if self.actor_id is not None:
            f["actor_id"] = self.actor_id
        if self.actor_role is not None:
            f["actor_role"] = self.actor_role
        if self.category is not None:
            f["category"] = self.category.value
        if self.status is not None:
            f["status"] = self.status.value
        if self.country is not None:
            f["country"] = self.country
        if self.department is not None:
            f["department"] = self.department
        return f

    def accepts(self, event: AuditEvent) -> bool:
        """Filters evaluated in process (substring, date range)."""
        if self.action_contains and self.action_contains.lower() not in event.action.lower():
            return False
        if self.since is not None and event.timestamp < _aware(self.since):
            return False
        return not (self.until is not None and event.timestamp > _aware(self.until))


class AuditLogSink:
    """Append-only sink for audit events.

    This class intentionally has NO update/delete methods.
    Audit records are immutable once written.
    """

    def __init__(self, store: StorePort, *, queue_size: int = 1000) -> None:
        self._store = store
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=queue_size)
        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False

    @staticmethod
    def build_event(
        *,
        actor: Actor | None,
        action: str,
        category: AuditCategory,
        target: str = "",
        detail: dict[str, Any] | None = None,
        status: AuditStatus = AuditStatus.SUCCESS,
        country: str | None = None,
        department: str | None = None,
    ) -> AuditEvent:
        """Validate and stamp a new event.

        Raises:
            ValidationError: If action is empty.
        """
        if not action or not action.strip():
            raise ValidationError("action must be non-empty", field="action")
        return AuditEvent(
            id=str(uuid4()),
            timestamp=datetime.now(UTC),
            actor_id=actor.user_id if actor else "system",
            actor_name=actor.name if actor else "system",
            actor_role=actor.role.value if actor else "system",
            action=action.strip(),
            category=category,
            target=target,
            detail=detail or {},
            status=status,
            country=country,
            department=department,
        )

    def emit(self, **kwargs: Any) -> AuditEvent | None:
        """Queue an event for background write without blocking.

        Accepts the keyword arguments of build_event(). Returns the queued
        event, or None if it was dropped (sink closed or queue full).
        Must be called from within a running event loop.
        """
        event = self.build_event(**kwargs)
        if self._closed:
            logger.warning("Audit sink closed; dropping event %s", event.action)
            return None
        self._ensure_drain()
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Audit queue full; dropping event %s", event.action)
            return None
        return event

    async def write_event(self, **kwargs: Any) -> AuditEvent:
        """Write one event immediately.

        Raises:
            ValidationError: If action is empty.
            StoreUnavailableError: Store unreachable.
        """
        event = self.build_event(**kwargs)
        await self._persist(event)
        return event

    async def _persist(self, event: AuditEvent) -> None:
        await self._store.put(AUDIT_LOG, event.id, event.to_record(), expected_version=0)

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._persist(event)
            except CaseBookingError:
                logger.warning("Audit write failed for %s", event.action, exc_info=True)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued event has been written (or given up on)."""
        if self._drain_task is None:
            return
        if not self._queue.empty():
            self._ensure_drain()
        await self._queue.join()

    async def close(self) -> None:
        """Drain pending events and stop the background task."""
        self._closed = True
        await self.flush()
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def query(self, filters: AuditQuery | None = None) -> list[AuditEvent]:
        """Return matching events, newest first.

        Raises:
            StoreUnavailableError: Store unreachable.
        """
        q = filters or AuditQuery()
        rows = await self._store.get(AUDIT_LOG, q.store_filter() or None)
        events = [AuditEvent.from_record(row) for row in rows]
        events = [e for e in events if q.accepts(e)]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        if q.limit is not None:
            events = events[: q.limit]
        return events
