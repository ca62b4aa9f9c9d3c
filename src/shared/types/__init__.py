"""Shared domain types used across layers.

These types flow through Port interfaces and the two engines, and must
remain stable. Persistence shape (plain dict records) lives in
src/cases/records.py; nothing here performs I/O.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.infra.auth.rbac import UNSCOPED_ROLES, PermissionAction, Role

if TYPE_CHECKING:
    from datetime import date, datetime

# -- Identity --


@dataclass(frozen=True)
class Actor:
    """The current user, as resolved by the Identity Provider."""

    user_id: str
    role: Role
    name: str = ""
    countries: frozenset[str] = field(default_factory=frozenset)
    departments: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_unscoped(self) -> bool:
        return self.role in UNSCOPED_ROLES

    def in_scope(self, *, country: str, department: str) -> bool:
        """True if the actor may act on a case in this country/department."""
        if self.is_unscoped:
            return True
        return country in self.countries and department in self.departments


# -- Permission matrix --


@dataclass(frozen=True)
class PermissionEntry:
    """One matrix cell: (action, role) -> allowed."""

    action: PermissionAction
    role: Role
    allowed: bool


# -- Case lifecycle --


class CaseStatus(enum.Enum):
    """11 case statuses; the first ten form the operational pipeline."""

    BOOKED = "Booked"
    ORDER_PREPARATION = "OrderPreparation"
    ORDER_PREPARED = "OrderPrepared"
    PENDING_DELIVERY_HOSPITAL = "PendingDeliveryHospital"
    DELIVERED_HOSPITAL = "DeliveredHospital"
    COMPLETED = "Completed"
    PENDING_DELIVERY_OFFICE = "PendingDeliveryOffice"
    DELIVERED_OFFICE = "DeliveredOffice"
    TO_BE_BILLED = "ToBeBilled"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStatus.CLOSED, CaseStatus.CANCELLED)


@dataclass(frozen=True)
class EquipmentSelection:
    """A surgery set or implant box requested for a case."""

    name: str
    quantity: int = 1


@dataclass(frozen=True)
class FieldChange:
    """Before/after values of one amended field."""

    before: Any
    after: Any


@dataclass(frozen=True)
class StatusHistoryEntry:
    """Immutable record of one successful transition."""

    case_id: str
    sequence: int
    from_status: CaseStatus
    to_status: CaseStatus
    changed_by: str
    timestamp: datetime
    note: str | None = None


@dataclass(frozen=True)
class AmendmentHistoryEntry:
    """Immutable record of one successful amendment (status unchanged)."""

    case_id: str
    sequence: int
    changed_fields: dict[str, FieldChange]
    changed_by: str
    timestamp: datetime
    reason: str | None = None


HistoryEntry = StatusHistoryEntry | AmendmentHistoryEntry


@dataclass(frozen=True)
class Case:
    """A booked surgical procedure and its position in the pipeline.

    version/history_seq/last_entry are store bookkeeping: version is the
    optimistic-concurrency counter, history_seq the last sequence number
    handed out, and last_entry the newest history entry written together
    with the case row.
    """

    case_id: str
    reference_number: str
    hospital: str
    department: str
    country: str
    date_of_surgery: date
    procedure_type: str
    procedure_name: str
    status: CaseStatus
    created_by: str
    created_at: datetime
    doctor_name: str | None = None
    time_of_procedure: str | None = None
    surgery_sets: tuple[EquipmentSelection, ...] = ()
    implant_boxes: tuple[EquipmentSelection, ...] = ()
    special_instruction: str | None = None
    version: int = 0
    history_seq: int = 0
    last_entry: HistoryEntry | None = None


@dataclass(frozen=True)
class CaseHistory:
    """Both history sequences of one case, each ordered by sequence."""

    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    amendments: list[AmendmentHistoryEntry] = field(default_factory=list)
