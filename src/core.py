"""CaseBookingCore - the externally visible operations of the core.

Wires the two engines together for callers (HTTP gateway, jobs, tests):
  Actor (IdentityPort) → PermissionEngine → CaseLifecycle/CaseService
  → HistoryLedger, with every successful action recorded on the
  AuditLogSink.

- Permission snapshot is freshened (TTL/invalidation) before every
  mutating call; resolve_permission itself never does I/O
- transition_case/amend_case retry once on StaleStateError when the
  conflicting write left the case's status unchanged; a status race
  surfaces to the caller
- Rejections are counted and logged as structured warnings; store
  outages as structured errors
"""

from __future__ import annotations

import logging
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry

from src.cases import bulk
from src.cases.service import CaseDraft
from src.infra.audit.writer import AuditCategory, AuditStatus
from src.infra.auth.rbac import PermissionAction
from src.shared.errors import (
    AdminImmutableError,
    AuthenticationError,
    IllegalTransitionError,
    PermissionDeniedError,
    ScopeViolationError,
    StaleStateError,
    StoreUnavailableError,
    TerminalStateError,
)
from src.shared.logging.error_handler import log_structured_error
from src.shared.metrics import CaseBookingMetrics

if TYPE_CHECKING:
    from src.cases.bulk import ImportSummary
    from src.cases.lifecycle import AmendOutcome, TransitionOutcome
    from src.cases.service import CaseFilter, CaseService
    from src.infra.audit.writer import AuditEvent, AuditLogSink, AuditQuery
    from src.infra.auth.rbac import Role
    from src.permissions.engine import PermissionEngine
    from src.ports.identity_port import IdentityPort
    from src.shared.types import Actor, Case, CaseHistory, CaseStatus, PermissionEntry

logger = logging.getLogger(__name__)

_REJECTIONS = (
    PermissionDeniedError,
    ScopeViolationError,
    AdminImmutableError,
    IllegalTransitionError,
    TerminalStateError,
    StaleStateError,
)


class CaseBookingCore:
    """Facade over the permission engine, case service and audit sink."""

    def __init__(
        self,
        *,
        permissions: PermissionEngine,
        cases: CaseService,
        audit: AuditLogSink,
        identity: IdentityPort,
        metrics: CaseBookingMetrics | None = None,
    ) -> None:
        self._permissions = permissions
        self._cases = cases
        self._audit = audit
        self._identity = identity
        self._metrics = metrics or CaseBookingMetrics(registry=CollectorRegistry())

    # -- Lifecycle --

    async def start(self) -> None:
        """Load the permission matrix and subscribe to its changes."""
        await self._permissions.initialize()
        await self._permissions.start()

    async def close(self) -> None:
        await self._permissions.close()
        await self._audit.close()

    async def __aenter__(self) -> CaseBookingCore:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def permissions(self) -> PermissionEngine:
        return self._permissions

    @property
    def audit(self) -> AuditLogSink:
        return self._audit

    # -- Helpers --

    @contextmanager
    def _guard(self, operation: str, actor: Actor | None) -> Generator[None, None, None]:
        actor_id = actor.user_id if actor else ""
        with self._metrics.timer(operation):
            try:
                yield
            except _REJECTIONS as exc:
                self._metrics.denials.labels(reason=exc.code).inc()
                log_structured_error(
                    logger,
                    exc,
                    actor_id=actor_id,
                    operation=operation,
                    level=logging.WARNING,
                )
                raise
            except StoreUnavailableError as exc:
                self._metrics.store_unavailable.labels(operation=operation).inc()
                log_structured_error(logger, exc, actor_id=actor_id, operation=operation)
                raise

    def _require(self, actor: Actor, action: PermissionAction) -> None:
        if not self._permissions.resolve(actor.role, action):
            raise PermissionDeniedError(action.value)

    # -- Identity --

    async def authenticate(self, session_token: str) -> Actor:
        """Resolve a session token and record the login.

        Raises:
            AuthenticationError: token missing, invalid or expired.
        """
        try:
            actor = self._identity.resolve(session_token)
        except AuthenticationError:
            self._audit.emit(
                actor=None,
                action="Login Failed",
                category=AuditCategory.AUTHENTICATION,
                status=AuditStatus.WARNING,
            )
            raise
        self._audit.emit(
            actor=actor,
            action="User Login",
            category=AuditCategory.AUTHENTICATION,
            target=actor.user_id,
        )
        return actor

    # -- Permissions --

    def resolve_permission(self, role: Role, action: PermissionAction) -> bool:
        return self._permissions.resolve(role, action)

    def list_permission_matrix(self) -> list[PermissionEntry]:
        return self._permissions.list_matrix()

    async def set_permission(
        self,
        action: PermissionAction,
        role: Role,
        allowed: bool,
        *,
        actor: Actor,
    ) -> PermissionEntry:
        with self._guard("set_permission", actor):
            await self._permissions.ensure_fresh()
            return await self._permissions.set_entry(action, role, allowed, actor=actor)

    async def reset_permissions(self, *, actor: Actor) -> list[PermissionEntry]:
        with self._guard("reset_permissions", actor):
            await self._permissions.ensure_fresh()
            return await self._permissions.reset_to_defaults(actor=actor)

    # -- Cases --

    async def create_case(self, data: Mapping[str, Any] | CaseDraft, actor: Actor) -> Case:
        with self._guard("create_case", actor):
            await self._permissions.ensure_fresh()
            self._require(actor, PermissionAction.CREATE_CASE)
            draft = data if isinstance(data, CaseDraft) else CaseDraft.from_mapping(data)
            case = await self._cases.create(draft, actor)
        self._audit.emit(
            actor=actor,
            action="Case Created",
            category=AuditCategory.CASE_MANAGEMENT,
            target=case.reference_number,
            detail={"case_id": case.case_id, "hospital": case.hospital},
            country=case.country,
            department=case.department,
        )
        return case

    async def get_case(self, case_id: str, actor: Actor) -> Case:
        with self._guard("get_case", actor):
            self._require(actor, PermissionAction.VIEW_CASES)
            case = await self._cases.load(case_id)
            if not actor.in_scope(country=case.country, department=case.department):
                raise ScopeViolationError(country=case.country, department=case.department)
            return case

    async def list_cases(self, actor: Actor, filters: CaseFilter | None = None) -> list[Case]:
        with self._guard("list_cases", actor):
            self._require(actor, PermissionAction.VIEW_CASES)
            return await self._cases.list_cases(actor, filters)

    async def get_case_history(self, case_id: str, actor: Actor) -> CaseHistory:
        case = await self.get_case(case_id, actor)
        with self._guard("get_case_history", actor):
            return await self._cases.history(case)

    async def transition_case(
        self,
        case_id: str,
        target: CaseStatus,
        actor: Actor,
        *,
        note: str | None = None,
    ) -> TransitionOutcome:
        with self._guard("transition_case", actor):
            await self._permissions.ensure_fresh()
            self._require(actor, PermissionAction.VIEW_CASES)
            case = await self._cases.load(case_id)
            try:
                outcome = await self._cases.transition(case, target, actor, note=note)
            except StaleStateError:
                fresh = await self._reload_for_retry(case)
                outcome = await self._cases.transition(fresh, target, actor, note=note)

        if outcome.entry is not None:
            self._metrics.transitions.labels(
                from_status=outcome.entry.from_status.value,
                to_status=outcome.entry.to_status.value,
            ).inc()
            self._audit.emit(
                actor=actor,
                action="Status Changed",
                category=AuditCategory.STATUS_CHANGE,
                target=outcome.case.reference_number,
                detail={
                    "case_id": case_id,
                    "from": outcome.entry.from_status.value,
                    "to": outcome.entry.to_status.value,
                    "note": note,
                },
                country=outcome.case.country,
                department=outcome.case.department,
            )
        return outcome

    async def amend_case(
        self,
        case_id: str,
        changes: Mapping[str, Any],
        actor: Actor,
        *,
        reason: str | None = None,
    ) -> AmendOutcome:
        with self._guard("amend_case", actor):
            await self._permissions.ensure_fresh()
            case = await self._cases.load(case_id)
            try:
                outcome = await self._cases.amend(case, changes, actor, reason=reason)
            except StaleStateError:
                fresh = await self._reload_for_retry(case)
                outcome = await self._cases.amend(fresh, changes, actor, reason=reason)

        if outcome.entry is not None:
            self._metrics.amendments.inc()
            self._audit.emit(
                actor=actor,
                action="Case Amended",
                category=AuditCategory.CASE_MANAGEMENT,
                target=outcome.case.reference_number,
                detail={
                    "case_id": case_id,
                    "fields": sorted(outcome.entry.changed_fields),
                    "reason": reason,
                },
                country=outcome.case.country,
                department=outcome.case.department,
            )
        return outcome

    async def _reload_for_retry(self, observed: Case) -> Case:
        """Re-read after a version conflict; only a same-status conflict is retried."""
        fresh = await self._cases.load(observed.case_id)
        if fresh.status is not observed.status:
            self._metrics.stale_retries.labels(outcome="surfaced").inc()
            raise StaleStateError(
                "cases",
                observed.case_id,
                expected_version=observed.version,
                actual_version=fresh.version,
            )
        self._metrics.stale_retries.labels(outcome="retried").inc()
        return fresh

    # -- Bulk --

    async def import_cases(
        self,
        records: Iterable[Mapping[str, Any]],
        actor: Actor,
    ) -> ImportSummary:
        with self._guard("import_cases", actor):
            await self._permissions.ensure_fresh()
            self._require(actor, PermissionAction.IMPORT_DATA)
            summary = await bulk.import_cases(self._cases, records, actor)
        self._audit.emit(
            actor=actor,
            action="Cases Imported",
            category=AuditCategory.DATA_IMPORT,
            detail={"created": len(summary.created), "failed": len(summary.failed)},
            status=AuditStatus.SUCCESS if summary.success else AuditStatus.WARNING,
        )
        return summary

    async def export_cases(
        self,
        actor: Actor,
        filters: CaseFilter | None = None,
    ) -> list[dict[str, Any]]:
        with self._guard("export_cases", actor):
            self._require(actor, PermissionAction.EXPORT_DATA)
            rows = await bulk.export_cases(self._cases, actor, filters)
        self._audit.emit(
            actor=actor,
            action="Cases Exported",
            category=AuditCategory.DATA_EXPORT,
            detail={"count": len(rows)},
        )
        return rows

    # -- Audit --

    async def query_audit_log(
        self,
        actor: Actor,
        filters: AuditQuery | None = None,
    ) -> list[AuditEvent]:
        with self._guard("query_audit_log", actor):
            self._require(actor, PermissionAction.VIEW_AUDIT_LOGS)
            await self._audit.flush()
            return await self._audit.query(filters)
