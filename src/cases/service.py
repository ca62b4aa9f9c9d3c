"""Case service - persistence orchestration around the lifecycle machine.

Write path for a transition or amendment:
  1. CaseLifecycle produces the next Case (status/fields, history_seq,
     last_entry) and its history entry
  2. One versioned put of the case row (expected_version = read version);
     status and history entry land together or not at all
  3. The entry is appended to the History Ledger under a deterministic id

If step 3 fails, the entry stays in the case row (last_entry) and is
flushed by the next load(); history reads merge it in the meantime.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from src.cases.lifecycle import normalize_field
from src.cases.records import case_from_record, case_to_record
from src.ports.store_port import CASES
from src.shared.errors import (
    NotFoundError,
    ScopeViolationError,
    StoreUnavailableError,
    ValidationError,
)
from src.shared.types import (
    Case,
    CaseHistory,
    CaseStatus,
    EquipmentSelection,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from src.cases.history import HistoryLedger
    from src.cases.lifecycle import AmendOutcome, CaseLifecycle, TransitionOutcome
    from src.cases.reference import ReferenceNumberGenerator
    from src.ports.store_port import StorePort
    from src.shared.types import Actor, HistoryEntry

logger = logging.getLogger(__name__)

_DRAFT_REQUIRED = (
    "hospital",
    "department",
    "country",
    "date_of_surgery",
    "procedure_type",
    "procedure_name",
)


@dataclass(frozen=True)
class CaseDraft:
    """Validated input for a new case."""

    hospital: str
    department: str
    country: str
    date_of_surgery: date
    procedure_type: str
    procedure_name: str
    doctor_name: str | None = None
    time_of_procedure: str | None = None
    surgery_sets: tuple[EquipmentSelection, ...] = field(default_factory=tuple)
    implant_boxes: tuple[EquipmentSelection, ...] = field(default_factory=tuple)
    special_instruction: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CaseDraft:
        """Build a draft from loose input (API body, import row).

        Raises:
            ValidationError: Missing required field, unknown field, or bad value.
        """
        known = set(_DRAFT_REQUIRED) | {
            "doctor_name",
            "time_of_procedure",
            "surgery_sets",
            "implant_boxes",
            "special_instruction",
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown case field: {unknown[0]}", field=unknown[0])
        for name in _DRAFT_REQUIRED:
            value = data.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"{name} is required", field=name)

        return cls(
            hospital=str(data["hospital"]).strip(),
            department=str(data["department"]).strip(),
            country=str(data["country"]).strip(),
            date_of_surgery=normalize_field("date_of_surgery", data["date_of_surgery"]),
            procedure_type=normalize_field("procedure_type", data["procedure_type"]),
            procedure_name=normalize_field("procedure_name", data["procedure_name"]),
            doctor_name=normalize_field("doctor_name", data.get("doctor_name")),
            time_of_procedure=normalize_field("time_of_procedure", data.get("time_of_procedure")),
            surgery_sets=normalize_field("surgery_sets", data.get("surgery_sets")),
            implant_boxes=normalize_field("implant_boxes", data.get("implant_boxes")),
            special_instruction=normalize_field(
                "special_instruction", data.get("special_instruction")
            ),
        )


@dataclass(frozen=True)
class CaseFilter:
    """Equality filters for list_cases(); None matches everything."""

    status: CaseStatus | None = None
    country: str | None = None
    department: str | None = None
    hospital: str | None = None

    def store_filter(self) -> dict[str, Any]:
        f: dict[str, Any] = {}
        if self.status is not None:
            f["status"] = self.status.value
        for name in ("country", "department", "hospital"):
            value = getattr(self, name)
            if value is not None:
                f[name] = value
        return f


class CaseService:
    """Reads and writes cases; keeps status and history in step."""

    def __init__(
        self,
        store: StorePort,
        *,
        lifecycle: CaseLifecycle,
        ledger: HistoryLedger,
        references: ReferenceNumberGenerator,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._ledger = ledger
        self._references = references
        self._clock = clock

    @property
    def lifecycle(self) -> CaseLifecycle:
        return self._lifecycle

    # -- Reads --

    async def load(self, case_id: str) -> Case:
        """Read one case, flushing its pending history entry to the ledger.

        Raises:
            NotFoundError: No such case.
            StoreUnavailableError: Store unreachable.
        """
        record = await self._store.get_by_id(CASES, case_id)
        if record is None:
            raise NotFoundError("Case", case_id)
        case = case_from_record(record)
        await self._flush_outbox(case)
        return case

    async def _flush_outbox(self, case: Case) -> None:
        if case.last_entry is None:
            return
        try:
            if await self._ledger.append(case.case_id, case.last_entry):
                logger.debug(
                    "Flushed pending history entry %d for case %s",
                    case.last_entry.sequence,
                    case.case_id,
                )
        except StoreUnavailableError:
            logger.warning("History flush for case %s deferred", case.case_id, exc_info=True)

    async def list_cases(self, actor: Actor, filters: CaseFilter | None = None) -> list[Case]:
        """Cases matching filters within the actor's scope, by surgery date."""
        rows = await self._store.get(CASES, (filters or CaseFilter()).store_filter() or None)
        cases = [case_from_record(r) for r in rows]
        visible = [c for c in cases if actor.in_scope(country=c.country, department=c.department)]
        return sorted(visible, key=lambda c: (c.date_of_surgery, c.reference_number))

    async def history(self, case: Case) -> CaseHistory:
        """Both history sequences, including an entry still held in the case row."""
        status_history = await self._ledger.list_status_history(case.case_id)
        amendments = await self._ledger.list_amendments(case.case_id)
        pending = case.last_entry
        if pending is not None:
            sequences = {e.sequence for e in status_history} | {e.sequence for e in amendments}
            if pending.sequence not in sequences:
                if isinstance(pending, StatusHistoryEntry):
                    status_history = sorted([*status_history, pending], key=lambda e: e.sequence)
                else:
                    amendments = sorted([*amendments, pending], key=lambda e: e.sequence)
        return CaseHistory(status_history=status_history, amendments=amendments)

    # -- Writes --

    async def create(self, draft: CaseDraft, actor: Actor) -> Case:
        """Persist a new Booked case with a freshly allocated reference number.

        Raises:
            ScopeViolationError: country/department outside the actor's scope.
            StoreUnavailableError: Store unreachable.
        """
        if not actor.in_scope(country=draft.country, department=draft.department):
            raise ScopeViolationError(country=draft.country, department=draft.department)

        created_at = self._clock()
        reference = await self._references.next_reference(draft.country, created_at.year)
        case = Case(
            case_id=str(uuid4()),
            reference_number=reference,
            hospital=draft.hospital,
            department=draft.department,
            country=draft.country,
            date_of_surgery=draft.date_of_surgery,
            procedure_type=draft.procedure_type,
            procedure_name=draft.procedure_name,
            status=CaseStatus.BOOKED,
            created_by=actor.user_id,
            created_at=created_at,
            doctor_name=draft.doctor_name,
            time_of_procedure=draft.time_of_procedure,
            surgery_sets=draft.surgery_sets,
            implant_boxes=draft.implant_boxes,
            special_instruction=draft.special_instruction,
        )
        record = await self._store.put(
            CASES,
            case.case_id,
            case_to_record(case),
            expected_version=0,
        )
        logger.info("Case %s created as %s by %s", case.case_id, reference, actor.user_id)
        return case_from_record(record)

    async def transition(
        self,
        case: Case,
        target: CaseStatus,
        actor: Actor,
        *,
        note: str | None = None,
    ) -> TransitionOutcome:
        """Validate and persist one transition of an already-loaded case.

        Raises:
            StaleStateError: case changed since it was loaded.
            StoreUnavailableError: the pending history entry could not be
                written; the case is left unchanged.
            (plus the CaseLifecycle.attempt_transition rejections)
        """
        outcome = self._lifecycle.attempt_transition(case, target, actor, note=note)
        if outcome.entry is None:
            return outcome
        stored = await self._commit(case, outcome.case, outcome.entry)
        return type(outcome)(case=stored, entry=outcome.entry)

    async def amend(
        self,
        case: Case,
        changes: Mapping[str, Any],
        actor: Actor,
        *,
        reason: str | None = None,
    ) -> AmendOutcome:
        """Validate and persist one amendment of an already-loaded case.

        Raises:
            StaleStateError: case changed since it was loaded.
            StoreUnavailableError: the pending history entry could not be
                written; the case is left unchanged.
            (plus the CaseLifecycle.attempt_amend rejections)
        """
        outcome = self._lifecycle.attempt_amend(case, changes, actor, reason=reason)
        if outcome.entry is None:
            return outcome
        stored = await self._commit(case, outcome.case, outcome.entry)
        return type(outcome)(case=stored, entry=outcome.entry)

    async def _commit(self, before: Case, after: Case, entry: HistoryEntry) -> Case:
        # The row holds one pending entry; it must reach the ledger before the
        # slot is reused.
        if before.last_entry is not None:
            await self._ledger.append(before.case_id, before.last_entry)
        record = await self._store.put(
            CASES,
            after.case_id,
            case_to_record(after),
            expected_version=before.version,
        )
        stored = case_from_record(record)
        await self._flush_outbox(stored)
        return stored
