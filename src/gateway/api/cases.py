"""Case API -- create, read, transition, amend, history, bulk.

- POST  /api/v1/cases                    -> create (create-case)
- GET   /api/v1/cases                    -> list within scope (view-cases)
- POST  /api/v1/cases/import             -> bulk create (import-data)
- GET   /api/v1/cases/export             -> export rows (export-data)
- GET   /api/v1/cases/{id}               -> detail (view-cases)
- POST  /api/v1/cases/{id}/transitions   -> status change
- PATCH /api/v1/cases/{id}               -> amendment
- GET   /api/v1/cases/{id}/history       -> status + amendment history
"""

from __future__ import annotations

import logging
from datetime import date, datetime  # noqa: TC003 - needed at runtime by pydantic
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.cases.service import CaseFilter
from src.gateway.middleware.auth import current_actor
from src.shared.errors import ValidationError
from src.shared.types import (
    Actor,
    AmendmentHistoryEntry,
    Case,
    CaseStatus,
    EquipmentSelection,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from src.core import CaseBookingCore

logger = logging.getLogger(__name__)


class EquipmentModel(BaseModel):
    name: str
    quantity: int = Field(default=1, ge=1)


class CreateCaseRequest(BaseModel):
    hospital: str
    department: str
    country: str
    date_of_surgery: date
    procedure_type: str
    procedure_name: str
    doctor_name: str | None = None
    time_of_procedure: str | None = None
    surgery_sets: list[EquipmentModel] = []
    implant_boxes: list[EquipmentModel] = []
    special_instruction: str | None = None


class TransitionRequest(BaseModel):
    status: str
    note: str | None = None


class AmendRequest(BaseModel):
    changes: dict[str, Any]
    reason: str | None = None


class ImportRequest(BaseModel):
    records: list[dict[str, Any]]


class CaseResponse(BaseModel):
    case_id: str
    reference_number: str
    hospital: str
    department: str
    country: str
    date_of_surgery: date
    procedure_type: str
    procedure_name: str
    status: str
    created_by: str
    created_at: datetime
    doctor_name: str | None = None
    time_of_procedure: str | None = None
    surgery_sets: list[EquipmentModel] = []
    implant_boxes: list[EquipmentModel] = []
    special_instruction: str | None = None
    version: int


class CaseListResponse(BaseModel):
    cases: list[CaseResponse]
    total: int


class MutationResponse(BaseModel):
    case: CaseResponse
    changed: bool
    sequence: int | None = None


class StatusEntryResponse(BaseModel):
    sequence: int
    from_status: str
    to_status: str
    changed_by: str
    timestamp: datetime
    note: str | None = None


class FieldChangeResponse(BaseModel):
    before: Any = None
    after: Any = None


class AmendmentEntryResponse(BaseModel):
    sequence: int
    changed_fields: dict[str, FieldChangeResponse]
    changed_by: str
    timestamp: datetime
    reason: str | None = None


class CaseHistoryResponse(BaseModel):
    case_id: str
    status_history: list[StatusEntryResponse]
    amendments: list[AmendmentEntryResponse]


class ImportFailureResponse(BaseModel):
    index: int
    error: str


class ImportResponse(BaseModel):
    success: bool
    created: list[CaseResponse]
    failed: list[ImportFailureResponse]


class ExportResponse(BaseModel):
    rows: list[dict[str, Any]]
    total: int


def _equipment(items: tuple[EquipmentSelection, ...]) -> list[EquipmentModel]:
    return [EquipmentModel(name=i.name, quantity=i.quantity) for i in items]


def to_case_response(case: Case) -> CaseResponse:
    return CaseResponse(
        case_id=case.case_id,
        reference_number=case.reference_number,
        hospital=case.hospital,
        department=case.department,
        country=case.country,
        date_of_surgery=case.date_of_surgery,
        procedure_type=case.procedure_type,
        procedure_name=case.procedure_name,
        status=case.status.value,
        created_by=case.created_by,
        created_at=case.created_at,
        doctor_name=case.doctor_name,
        time_of_procedure=case.time_of_procedure,
        surgery_sets=_equipment(case.surgery_sets),
        implant_boxes=_equipment(case.implant_boxes),
        special_instruction=case.special_instruction,
        version=case.version,
    )


def _status_entry(entry: StatusHistoryEntry) -> StatusEntryResponse:
    return StatusEntryResponse(
        sequence=entry.sequence,
        from_status=entry.from_status.value,
        to_status=entry.to_status.value,
        changed_by=entry.changed_by,
        timestamp=entry.timestamp,
        note=entry.note,
    )


def _amendment_entry(entry: AmendmentHistoryEntry) -> AmendmentEntryResponse:
    return AmendmentEntryResponse(
        sequence=entry.sequence,
        changed_fields={
            name: FieldChangeResponse(before=c.before, after=c.after)
            for name, c in entry.changed_fields.items()
        },
        changed_by=entry.changed_by,
        timestamp=entry.timestamp,
        reason=entry.reason,
    )


def _parse_status(value: str) -> CaseStatus:
    try:
        return CaseStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown case status: {value}", field="status") from None


def create_case_router(*, core: CaseBookingCore) -> APIRouter:
    """Create case API router."""
    router = APIRouter(prefix="/api/v1/cases", tags=["cases"])

    @router.post("", response_model=CaseResponse, status_code=201)
    async def create_case(
        body: CreateCaseRequest,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> CaseResponse:
        case = await core.create_case(body.model_dump(), actor)
        return to_case_response(case)

    @router.get("", response_model=CaseListResponse)
    async def list_cases(
        actor: Annotated[Actor, Depends(current_actor)],
        status: str | None = None,
        country: str | None = None,
        department: str | None = None,
        hospital: str | None = None,
    ) -> CaseListResponse:
        filters = CaseFilter(
            status=_parse_status(status) if status else None,
            country=country,
            department=department,
            hospital=hospital,
        )
        cases = await core.list_cases(actor, filters)
        return CaseListResponse(cases=[to_case_response(c) for c in cases], total=len(cases))

    @router.post("/import", response_model=ImportResponse)
    async def import_cases(
        body: ImportRequest,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> ImportResponse:
        summary = await core.import_cases(body.records, actor)
        return ImportResponse(
            success=summary.success,
            created=[to_case_response(c) for c in summary.created],
            failed=[ImportFailureResponse(index=i, error=e) for i, e in summary.failed],
        )

    @router.get("/export", response_model=ExportResponse)
    async def export_cases(
        actor: Annotated[Actor, Depends(current_actor)],
        status: str | None = None,
        country: str | None = None,
    ) -> ExportResponse:
        filters = CaseFilter(status=_parse_status(status) if status else None, country=country)
        rows = await core.export_cases(actor, filters)
        return ExportResponse(rows=rows, total=len(rows))

    @router.get("/{case_id}", response_model=CaseResponse)
    async def get_case(
        case_id: str,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> CaseResponse:
        return to_case_response(await core.get_case(case_id, actor))

    @router.post("/{case_id}/transitions", response_model=MutationResponse)
    async def transition_case(
        case_id: str,
        body: TransitionRequest,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> MutationResponse:
        outcome = await core.transition_case(
            case_id,
            _parse_status(body.status),
            actor,
            note=body.note,
        )
        return MutationResponse(
            case=to_case_response(outcome.case),
            changed=outcome.changed,
            sequence=outcome.entry.sequence if outcome.entry else None,
        )

    @router.patch("/{case_id}", response_model=MutationResponse)
    async def amend_case(
        case_id: str,
        body: AmendRequest,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> MutationResponse:
        outcome = await core.amend_case(case_id, body.changes, actor, reason=body.reason)
        return MutationResponse(
            case=to_case_response(outcome.case),
            changed=outcome.changed,
            sequence=outcome.entry.sequence if outcome.entry else None,
        )

    @router.get("/{case_id}/history", response_model=CaseHistoryResponse)
    async def get_history(
        case_id: str,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> CaseHistoryResponse:
        history = await core.get_case_history(case_id, actor)
        return CaseHistoryResponse(
            case_id=case_id,
            status_history=[_status_entry(e) for e in history.status_history],
            amendments=[_amendment_entry(e) for e in history.amendments],
        )

    return router
