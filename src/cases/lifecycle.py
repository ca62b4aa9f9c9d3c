"""Case Lifecycle State Machine.

Pipeline:
  Booked → OrderPreparation → OrderPrepared → PendingDeliveryHospital →
  DeliveredHospital → Completed → PendingDeliveryOffice → DeliveredOffice →
  ToBeBilled → Closed
  any non-terminal ↘ Cancelled

- Closed and Cancelled are terminal: no transition, no amendment
- Each edge is gated by one PermissionAction (TransitionPolicy)
- Pure: consults only the synchronous permission resolver, never the
  store. Produces the next Case and its history entry; persisting both
  is the caller's job (src/cases/service.py)

Transition check order:
  terminal → same status (no-op) → adjacency → permission → scope
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any, Protocol

from src.cases.records import to_json_value
from src.infra.auth.rbac import PermissionAction, resolve_action
from src.shared.errors import (
    IllegalTransitionError,
    PermissionDeniedError,
    ScopeViolationError,
    TerminalStateError,
    ValidationError,
)
from src.shared.types import (
    AmendmentHistoryEntry,
    Case,
    CaseStatus,
    EquipmentSelection,
    FieldChange,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from src.infra.auth.rbac import Role
    from src.shared.types import Actor

_S = CaseStatus
_A = PermissionAction

# Valid forward edges: (from, to) -> required action
DEFAULT_EDGE_ACTIONS: dict[tuple[CaseStatus, CaseStatus], PermissionAction] = {
    (_S.BOOKED, _S.ORDER_PREPARATION): _A.PROCESS_ORDER,
    (_S.ORDER_PREPARATION, _S.ORDER_PREPARED): _A.PROCESS_ORDER,
    (_S.ORDER_PREPARED, _S.PENDING_DELIVERY_HOSPITAL): _A.PROCESS_ORDER,
    (_S.PENDING_DELIVERY_HOSPITAL, _S.DELIVERED_HOSPITAL): _A.MARK_DELIVERED_HOSPITAL,
    (_S.DELIVERED_HOSPITAL, _S.COMPLETED): _A.CASE_COMPLETED,
    (_S.COMPLETED, _S.PENDING_DELIVERY_OFFICE): _A.PROCESS_ORDER,
    (_S.PENDING_DELIVERY_OFFICE, _S.DELIVERED_OFFICE): _A.MARK_DELIVERED_OFFICE,
    (_S.DELIVERED_OFFICE, _S.TO_BE_BILLED): _A.MARK_TO_BE_BILLED,
    (_S.TO_BE_BILLED, _S.CLOSED): _A.MANAGE_SETTINGS,
}

# Fields an amendment may touch; status is only changed by transitions.
AMENDABLE_FIELDS = frozenset(
    {
        "doctor_name",
        "procedure_type",
        "procedure_name",
        "date_of_surgery",
        "time_of_procedure",
        "surgery_sets",
        "implant_boxes",
        "special_instruction",
    }
)
_REQUIRED_TEXT_FIELDS = frozenset({"procedure_type", "procedure_name"})


class PermissionResolver(Protocol):
    """Synchronous allow/deny lookup (satisfied by PermissionEngine)."""

    def resolve(self, role: Role, action: PermissionAction) -> bool: ...


@dataclass(frozen=True)
class TransitionPolicy:
    """Which action gates which edge.

    Cancellation is allowed from every non-terminal status and gated by
    cancel_action.
    """

    edge_actions: Mapping[tuple[CaseStatus, CaseStatus], PermissionAction] = field(
        default_factory=lambda: dict(DEFAULT_EDGE_ACTIONS),
    )
    cancel_action: PermissionAction = PermissionAction.DELETE_CASE

    @classmethod
    def with_overrides(cls, overrides: Mapping[tuple[str, str], str]) -> TransitionPolicy:
        """Re-gate existing edges, e.g. {("ToBeBilled", "Closed"): "mark-to-be-billed"}.

        Raises:
            ValueError: Unknown status, unknown action, or not an existing edge.
        """
        edges = dict(DEFAULT_EDGE_ACTIONS)
        for (source_str, target_str), action_str in overrides.items():
            try:
                edge = (CaseStatus(source_str), CaseStatus(target_str))
            except ValueError as exc:
                msg = f"Unknown status in override {source_str}>{target_str}"
                raise ValueError(msg) from exc
            if edge not in edges:
                msg = f"{source_str}>{target_str} is not a pipeline edge"
                raise ValueError(msg)
            action = resolve_action(action_str)
            if action is None:
                msg = f"Unknown permission action {action_str!r}"
                raise ValueError(msg)
            edges[edge] = action
        return cls(edge_actions=edges)

    def required_action(self, current: CaseStatus, target: CaseStatus) -> PermissionAction | None:
        """Action gating current → target, or None if the edge does not exist."""
        if current.is_terminal:
            return None
        if target is CaseStatus.CANCELLED:
            return self.cancel_action
        return self.edge_actions.get((current, target))

    def successors(self, current: CaseStatus) -> list[CaseStatus]:
        if current.is_terminal:
            return []
        forward = [t for (s, t) in self.edge_actions if s is current]
        return [*forward, CaseStatus.CANCELLED]

    def originating_action(self, status: CaseStatus) -> PermissionAction:
        """The action that produced a status; create-case for Booked."""
        if status is CaseStatus.BOOKED:
            return PermissionAction.CREATE_CASE
        if status is CaseStatus.CANCELLED:
            return self.cancel_action
        for (_, target), action in self.edge_actions.items():
            if target is status:
                return action
        return PermissionAction.CREATE_CASE


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of attempt_transition; entry is None for a no-op re-assertion."""

    case: Case
    entry: StatusHistoryEntry | None = None

    @property
    def changed(self) -> bool:
        return self.entry is not None


@dataclass(frozen=True)
class AmendOutcome:
    """Result of attempt_amend; entry is None when nothing changed."""

    case: Case
    entry: AmendmentHistoryEntry | None = None

    @property
    def changed(self) -> bool:
        return self.entry is not None


def _parse_selections(name: str, value: Any) -> tuple[EquipmentSelection, ...]:
    if value is None:
        return ()
    if not isinstance(value, list | tuple):
        raise ValidationError(f"{name} must be a list", field=name)
    result = []
    for item in value:
        if isinstance(item, EquipmentSelection):
            selection = item
        elif isinstance(item, Mapping) and item.get("name"):
            try:
                selection = EquipmentSelection(
                    name=str(item["name"]),
                    quantity=int(item.get("quantity", 1)),
                )
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"{name}: invalid quantity", field=name) from exc
        elif isinstance(item, str) and item:
            selection = EquipmentSelection(name=item)
        else:
            raise ValidationError(f"{name}: each item needs a name", field=name)
        if selection.quantity < 1:
            raise ValidationError(
                f"{name}: quantity for {selection.name} must be at least 1",
                field=name,
            )
        result.append(selection)
    return tuple(result)


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError("date_of_surgery must be YYYY-MM-DD", field="date_of_surgery") from exc


def normalize_field(name: str, value: Any) -> Any:
    """Validate and coerce one amendable field value.

    Raises:
        ValidationError: Unknown field or invalid value.
    """
    if name not in AMENDABLE_FIELDS:
        raise ValidationError(f"{name} cannot be amended", field=name)
    if name in ("surgery_sets", "implant_boxes"):
        return _parse_selections(name, value)
    if name == "date_of_surgery":
        return _parse_date(value)
    if value is None:
        if name in _REQUIRED_TEXT_FIELDS:
            raise ValidationError(f"{name} is required", field=name)
        return None
    text = str(value).strip()
    if name in _REQUIRED_TEXT_FIELDS and not text:
        raise ValidationError(f"{name} is required", field=name)
    return text or None


class CaseLifecycle:
    """Validates transitions and amendments and produces their history entries."""

    def __init__(
        self,
        permissions: PermissionResolver,
        *,
        policy: TransitionPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._permissions = permissions
        self._policy = policy or TransitionPolicy()
        self._clock = clock

    @property
    def policy(self) -> TransitionPolicy:
        return self._policy

    def _authorize(self, case: Case, actor: Actor, action: PermissionAction) -> None:
        if not self._permissions.resolve(actor.role, action):
            raise PermissionDeniedError(action.value)
        if not actor.in_scope(country=case.country, department=case.department):
            raise ScopeViolationError(country=case.country, department=case.department)

    def attempt_transition(
        self,
        case: Case,
        requested_status: CaseStatus,
        actor: Actor,
        *,
        note: str | None = None,
    ) -> TransitionOutcome:
        """Move a case one step along the pipeline (or cancel it).

        Raises:
            TerminalStateError: case is Closed or Cancelled.
            IllegalTransitionError: requested_status is not a successor.
            PermissionDeniedError: actor's role lacks the edge's action.
            ScopeViolationError: case is outside the actor's scope.
        """
        if case.status.is_terminal:
            raise TerminalStateError(case.status.value)
        if requested_status is case.status:
            # No-op re-assertion is still scoped.
            if not actor.in_scope(country=case.country, department=case.department):
                raise ScopeViolationError(country=case.country, department=case.department)
            return TransitionOutcome(case=case)

        action = self._policy.required_action(case.status, requested_status)
        if action is None:
            raise IllegalTransitionError(case.status.value, requested_status.value)
        self._authorize(case, actor, action)

        sequence = case.history_seq + 1
        entry = StatusHistoryEntry(
            case_id=case.case_id,
            sequence=sequence,
            from_status=case.status,
            to_status=requested_status,
            changed_by=actor.user_id,
            timestamp=self._clock(),
            note=note,
        )
        updated = replace(case, status=requested_status, history_seq=sequence, last_entry=entry)
        return TransitionOutcome(case=updated, entry=entry)

    def attempt_amend(
        self,
        case: Case,
        changes: Mapping[str, Any],
        actor: Actor,
        *,
        reason: str | None = None,
    ) -> AmendOutcome:
        """Apply descriptive-field changes; status is never touched.

        Raises:
            TerminalStateError: case is Closed or Cancelled.
            PermissionDeniedError: actor lacks the action behind the current status.
            ScopeViolationError: case is outside the actor's scope.
            ValidationError: unknown field or invalid value.
        """
        if case.status.is_terminal:
            raise TerminalStateError(case.status.value)
        self._authorize(case, actor, self._policy.originating_action(case.status))

        normalized = {name: normalize_field(name, value) for name, value in changes.items()}
        changed_fields = {}
        for name, value in normalized.items():
            before = getattr(case, name)
            if before != value:
                changed_fields[name] = FieldChange(
                    before=to_json_value(before),
                    after=to_json_value(value),
                )
        if not changed_fields:
            return AmendOutcome(case=case)

        sequence = case.history_seq + 1
        entry = AmendmentHistoryEntry(
            case_id=case.case_id,
            sequence=sequence,
            changed_fields=changed_fields,
            changed_by=actor.user_id,
            timestamp=self._clock(),
            reason=reason,
        )
        updated = replace(
            case,
            **{name: normalized[name] for name in changed_fields},
            history_seq=sequence,
            last_entry=entry,
        )
        return AmendOutcome(case=updated, entry=entry)
