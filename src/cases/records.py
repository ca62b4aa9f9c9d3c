"""Store record <-> domain type conversion for cases and history.

Dates and datetimes are stored as ISO-8601 strings; enums by value.
History entries carry a "kind" discriminator ("status" | "amendment") so
the in-row outbox (Case.last_entry) can hold either shape.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from src.shared.types import (
    AmendmentHistoryEntry,
    Case,
    CaseStatus,
    EquipmentSelection,
    FieldChange,
    HistoryEntry,
    StatusHistoryEntry,
)

STATUS_KIND = "status"
AMENDMENT_KIND = "amendment"


def history_entry_id(case_id: str, sequence: int) -> str:
    """Deterministic ledger id; re-appending the same entry is a no-op."""
    return f"{case_id}:{sequence:010d}"


def to_json_value(value: Any) -> Any:
    """JSON-ready form of a field value (dates as ISO strings, selections as dicts)."""
    if isinstance(value, date | datetime):
        return value.isoformat()
    if isinstance(value, EquipmentSelection):
        return {"name": value.name, "quantity": value.quantity}
    if isinstance(value, tuple | list):
        return [to_json_value(v) for v in value]
    return value


def selections_to_json(items: tuple[EquipmentSelection, ...]) -> list[dict[str, Any]]:
    return [{"name": s.name, "quantity": s.quantity} for s in items]


def selections_from_json(items: list[dict[str, Any]] | None) -> tuple[EquipmentSelection, ...]:
    return tuple(
        EquipmentSelection(name=i["name"], quantity=int(i.get("quantity", 1))) for i in items or []
    )


# -- History entries --


def entry_to_record(entry: HistoryEntry) -> dict[str, Any]:
    base = {
        "case_id": entry.case_id,
        "sequence": entry.sequence,
        "changed_by": entry.changed_by,
        "timestamp": entry.timestamp.isoformat(),
    }
    if isinstance(entry, StatusHistoryEntry):
        return {
            **base,
            "kind": STATUS_KIND,
            "from_status": entry.from_status.value,
            "to_status": entry.to_status.value,
            "note": entry.note,
        }
    return {
        **base,
        "kind": AMENDMENT_KIND,
        "changed_fields": {
            name: {"before": to_json_value(c.before), "after": to_json_value(c.after)}
            for name, c in entry.changed_fields.items()
        },
        "reason": entry.reason,
    }


def entry_from_record(record: dict[str, Any]) -> HistoryEntry:
    timestamp = datetime.fromisoformat(record["timestamp"])
    if record.get("kind") == AMENDMENT_KIND:
        return AmendmentHistoryEntry(
            case_id=record["case_id"],
            sequence=int(record["sequence"]),
            changed_fields={
                name: FieldChange(before=c.get("before"), after=c.get("after"))
                for name, c in (record.get("changed_fields") or {}).items()
            },
            changed_by=record["changed_by"],
            timestamp=timestamp,
            reason=record.get("reason"),
        )
    return StatusHistoryEntry(
        case_id=record["case_id"],
        sequence=int(record["sequence"]),
        from_status=CaseStatus(record["from_status"]),
        to_status=CaseStatus(record["to_status"]),
        changed_by=record["changed_by"],
        timestamp=timestamp,
        note=record.get("note"),
    )


# -- Cases --


def case_to_record(case: Case) -> dict[str, Any]:
    """Full case document; version is managed by the store."""
    return {
        "case_id": case.case_id,
        "reference_number": case.reference_number,
        "hospital": case.hospital,
        "department": case.department,
        "country": case.country,
        "date_of_surgery": case.date_of_surgery.isoformat(),
        "procedure_type": case.procedure_type,
        "procedure_name": case.procedure_name,
        "status": case.status.value,
        "created_by": case.created_by,
        "created_at": case.created_at.isoformat(),
        "doctor_name": case.doctor_name,
        "time_of_procedure": case.time_of_procedure,
        "surgery_sets": selections_to_json(case.surgery_sets),
        "implant_boxes": selections_to_json(case.implant_boxes),
        "special_instruction": case.special_instruction,
        "history_seq": case.history_seq,
        "last_entry": entry_to_record(case.last_entry) if case.last_entry else None,
    }


def case_from_record(record: dict[str, Any]) -> Case:
    last = record.get("last_entry")
    return Case(
        case_id=record["case_id"],
        reference_number=record["reference_number"],
        hospital=record["hospital"],
        department=record["department"],
        country=record["country"],
        date_of_surgery=date.fromisoformat(record["date_of_surgery"]),
        procedure_type=record["procedure_type"],
        procedure_name=record["procedure_name"],
        status=CaseStatus(record["status"]),
        created_by=record["created_by"],
        created_at=datetime.fromisoformat(record["created_at"]),
        doctor_name=record.get("doctor_name"),
        time_of_procedure=record.get("time_of_procedure"),
        surgery_sets=selections_from_json(record.get("surgery_sets")),
        implant_boxes=selections_from_json(record.get("implant_boxes")),
        special_instruction=record.get("special_instruction"),
        version=int(record.get("version", 0)),
        history_seq=int(record.get("history_seq", 0)),
        last_entry=entry_from_record(last) if last else None,
    )


def case_to_export_row(case: Case) -> dict[str, Any]:
    """Flat, JSON-ready row without store bookkeeping."""
    row = case_to_record(case)
    del row["history_seq"]
    del row["last_entry"]
    return row
