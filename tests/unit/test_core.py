"""CaseBookingCore facade tests.

End-to-end over MemoryStore: permission engine + lifecycle + ledger +
audit sink wired by build_core().
"""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from src.core import CaseBookingCore
from src.infra.audit.writer import AuditCategory, AuditQuery, AuditStatus
from src.infra.auth.rbac import PermissionAction, Role
from src.infra.auth.session import encode_token
from src.main import build_core
from src.ports.store_port import CASE_STATUS_HISTORY
from src.shared.config import CoreSettings
from src.shared.errors import (
    AdminImmutableError,
    AuthenticationError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ScopeViolationError,
    StaleStateError,
    StoreUnavailableError,
    TerminalStateError,
)
from src.shared.metrics import CaseBookingMetrics
from src.shared.types import Actor, CaseStatus
from tests.fakes import FlakyStore, InterleavingStore

_S = CaseStatus
_A = PermissionAction


async def _advance(core: CaseBookingCore, case_id: str, actor: Actor, *targets: CaseStatus):
    outcome = None
    for target in targets:
        outcome = await core.transition_case(case_id, target, actor)
    return outcome


async def _audit_actions(core: CaseBookingCore, admin: Actor, **filters) -> list[str]:
    await core.audit.flush()
    return [e.action for e in await core.query_audit_log(admin, AuditQuery(**filters))]


@pytest.mark.unit
class TestScenarios:
    async def test_operations_processes_booked_case(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        outcome = await core.transition_case(case.case_id, _S.ORDER_PREPARATION, operations)

        assert outcome.case.status is _S.ORDER_PREPARATION
        history = await core.get_case_history(case.case_id, operations)
        assert [(e.from_status, e.to_status) for e in history.status_history] == [
            (_S.BOOKED, _S.ORDER_PREPARATION)
        ]

    async def test_driver_cannot_process_order(
        self, core: CaseBookingCore, case_data: dict, operations: Actor, driver: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        with pytest.raises(PermissionDeniedError):
            await core.transition_case(case.case_id, _S.ORDER_PREPARATION, driver)

        reloaded = await core.get_case(case.case_id, operations)
        assert reloaded.status is _S.BOOKED
        history = await core.get_case_history(case.case_id, operations)
        assert history.status_history == []

    async def test_permission_edit_visible_immediately(
        self, core: CaseBookingCore, admin: Actor
    ) -> None:
        await core.set_permission(_A.DELETE_CASE, Role.OPERATIONS_MANAGER, False, actor=admin)
        assert core.resolve_permission(Role.OPERATIONS_MANAGER, _A.DELETE_CASE) is False
        await core.set_permission(_A.DELETE_CASE, Role.OPERATIONS_MANAGER, True, actor=admin)
        assert core.resolve_permission(Role.OPERATIONS_MANAGER, _A.DELETE_CASE) is True

    async def test_concurrent_ship_and_cancel(
        self,
        settings: CoreSettings,
        case_data: dict,
        operations: Actor,
        operations_manager: Actor,
    ) -> None:
        assembly = build_core(
            settings,
            store=InterleavingStore(),
            metrics=CaseBookingMetrics(registry=CollectorRegistry()),
        )
        core = assembly.core
        await core.start()
        try:
            case = await core.create_case(case_data, operations)
            await _advance(core, case.case_id, operations, _S.ORDER_PREPARATION, _S.ORDER_PREPARED)

            results = await asyncio.gather(
                core.transition_case(case.case_id, _S.PENDING_DELIVERY_HOSPITAL, operations),
                core.transition_case(case.case_id, _S.CANCELLED, operations_manager),
                return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, BaseException)]
            assert len(errors) == 1
            assert isinstance(errors[0], StaleStateError)

            final = await core.get_case(case.case_id, operations)
            assert final.status in (_S.PENDING_DELIVERY_HOSPITAL, _S.CANCELLED)
            history = await core.get_case_history(case.case_id, operations)
            assert len(history.status_history) == 3
        finally:
            await assembly.aclose()


@pytest.mark.unit
class TestLifecycleThroughCore:
    async def test_full_pipeline_to_closed(
        self, core: CaseBookingCore, case_data: dict, admin: Actor
    ) -> None:
        case = await core.create_case(case_data, admin)
        pipeline = [
            _S.ORDER_PREPARATION,
            _S.ORDER_PREPARED,
            _S.PENDING_DELIVERY_HOSPITAL,
            _S.DELIVERED_HOSPITAL,
            _S.COMPLETED,
            _S.PENDING_DELIVERY_OFFICE,
            _S.DELIVERED_OFFICE,
            _S.TO_BE_BILLED,
            _S.CLOSED,
        ]
        outcome = await _advance(core, case.case_id, admin, *pipeline)
        assert outcome.case.status is _S.CLOSED
        history = await core.get_case_history(case.case_id, admin)
        assert [e.sequence for e in history.status_history] == list(range(1, 10))

        with pytest.raises(TerminalStateError):
            await core.transition_case(case.case_id, _S.CANCELLED, admin)
        with pytest.raises(TerminalStateError):
            await core.amend_case(case.case_id, {"doctor_name": "Dr Lim"}, admin)

    async def test_skip_is_illegal(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        with pytest.raises(IllegalTransitionError):
            await core.transition_case(case.case_id, _S.ORDER_PREPARED, operations)

    async def test_reassert_current_status_is_noop(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        outcome = await core.transition_case(case.case_id, _S.BOOKED, operations)
        assert outcome.changed is False
        history = await core.get_case_history(case.case_id, operations)
        assert history.status_history == []

    async def test_amend_records_history(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        outcome = await core.amend_case(
            case.case_id, {"doctor_name": "Dr Lim"}, operations, reason="surgeon swap"
        )
        assert outcome.case.doctor_name == "Dr Lim"
        assert outcome.case.status is _S.BOOKED
        history = await core.get_case_history(case.case_id, operations)
        assert history.amendments[0].changed_fields["doctor_name"].after == "Dr Lim"

    async def test_successive_amendments_bump_version(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        await core.amend_case(case.case_id, {"doctor_name": "Dr Lim"}, operations)
        outcome = await core.amend_case(case.case_id, {"special_instruction": "x"}, operations)
        assert outcome.case.version == 3
        history = await core.get_case_history(case.case_id, operations)
        assert [e.sequence for e in history.amendments] == [1, 2]

    async def test_same_status_conflict_is_retried(
        self, settings: CoreSettings, case_data: dict, operations: Actor
    ) -> None:
        assembly = build_core(
            settings,
            store=InterleavingStore(),
            metrics=CaseBookingMetrics(registry=CollectorRegistry()),
        )
        core = assembly.core
        try:
            case = await core.create_case(case_data, operations)
            first, second = await asyncio.gather(
                core.amend_case(case.case_id, {"doctor_name": "Dr Lim"}, operations),
                core.amend_case(case.case_id, {"special_instruction": "Spare set"}, operations),
            )
            final = await core.get_case(case.case_id, operations)
            assert final.version == 3
            assert final.doctor_name == "Dr Lim"
            assert final.special_instruction == "Spare set"
            assert {first.entry.sequence, second.entry.sequence} == {1, 2}
        finally:
            await assembly.aclose()

    async def test_history_survives_repeated_ledger_outage(
        self, settings: CoreSettings, case_data: dict, operations: Actor
    ) -> None:
        store = FlakyStore()
        assembly = build_core(
            settings, store=store, metrics=CaseBookingMetrics(registry=CollectorRegistry())
        )
        core = assembly.core
        try:
            case = await core.create_case(case_data, operations)
            store.down.add(CASE_STATUS_HISTORY)
            await core.transition_case(case.case_id, _S.ORDER_PREPARATION, operations)
            with pytest.raises(StoreUnavailableError):
                await core.transition_case(case.case_id, _S.ORDER_PREPARED, operations)

            store.down.clear()
            await core.transition_case(case.case_id, _S.ORDER_PREPARED, operations)
            history = await core.get_case_history(case.case_id, operations)
            assert [(e.sequence, e.to_status) for e in history.status_history] == [
                (1, _S.ORDER_PREPARATION),
                (2, _S.ORDER_PREPARED),
            ]
        finally:
            await assembly.aclose()

    async def test_revoked_permission_applies_to_next_transition(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        await core.set_permission(_A.PROCESS_ORDER, Role.OPERATIONS, False, actor=admin)
        with pytest.raises(PermissionDeniedError):
            await core.transition_case(case.case_id, _S.ORDER_PREPARATION, operations)


@pytest.mark.unit
class TestReadsAndScope:
    async def test_get_case_out_of_scope(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, make_actor
    ) -> None:
        case = await core.create_case(case_data, admin)
        outsider = make_actor(Role.SALES, countries=("Malaysia",))
        with pytest.raises(ScopeViolationError):
            await core.get_case(case.case_id, outsider)

    async def test_noop_transition_out_of_scope(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, make_actor
    ) -> None:
        case = await core.create_case(case_data, admin)
        outsider = make_actor(Role.DRIVER, countries=("Malaysia",), departments=("Orthopedics",))
        with pytest.raises(ScopeViolationError):
            await core.transition_case(case.case_id, _S.BOOKED, outsider)

    async def test_transition_requires_view_cases(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        await core.set_permission(_A.VIEW_CASES, Role.OPERATIONS, False, actor=admin)
        with pytest.raises(PermissionDeniedError):
            await core.transition_case(case.case_id, _S.BOOKED, operations)

    async def test_get_missing(self, core: CaseBookingCore, operations: Actor) -> None:
        with pytest.raises(NotFoundError):
            await core.get_case("missing", operations)

    async def test_create_requires_permission(
        self, core: CaseBookingCore, case_data: dict, driver: Actor
    ) -> None:
        with pytest.raises(PermissionDeniedError):
            await core.create_case(case_data, driver)

    async def test_list_cases(
        self, core: CaseBookingCore, case_data: dict, operations: Actor, driver: Actor
    ) -> None:
        await core.create_case(case_data, operations)
        assert len(await core.list_cases(driver)) == 1


@pytest.mark.unit
class TestPermissionsThroughCore:
    async def test_admin_immutable(self, core: CaseBookingCore, admin: Actor) -> None:
        with pytest.raises(AdminImmutableError):
            await core.set_permission(_A.VIEW_CASES, Role.ADMIN, False, actor=admin)

    async def test_non_admin_cannot_edit(self, core: CaseBookingCore, sales: Actor) -> None:
        with pytest.raises(PermissionDeniedError):
            await core.set_permission(_A.EXPORT_DATA, Role.SALES, True, actor=sales)

    async def test_reset(self, core: CaseBookingCore, admin: Actor) -> None:
        await core.set_permission(_A.EXPORT_DATA, Role.SALES, True, actor=admin)
        changed = await core.reset_permissions(actor=admin)
        assert len(changed) == 1
        assert core.resolve_permission(Role.SALES, _A.EXPORT_DATA) is False

    async def test_matrix_listing(self, core: CaseBookingCore) -> None:
        assert len(core.list_permission_matrix()) == 6 * len(PermissionAction)


@pytest.mark.unit
class TestAuditTrail:
    async def test_actions_audited(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, operations: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        await core.transition_case(case.case_id, _S.ORDER_PREPARATION, operations)
        await core.amend_case(case.case_id, {"doctor_name": "Dr Lim"}, admin)
        await core.set_permission(_A.EXPORT_DATA, Role.SALES, True, actor=admin)

        actions = await _audit_actions(core, admin)
        assert set(actions) == {
            "Case Created",
            "Status Changed",
            "Case Amended",
            "Permission Changed",
        }
        status = await core.query_audit_log(
            admin, AuditQuery(category=AuditCategory.STATUS_CHANGE)
        )
        assert status[0].detail["from"] == "Booked"
        assert status[0].country == "Singapore"

    async def test_rejections_not_audited_as_success(
        self, core: CaseBookingCore, case_data: dict, operations: Actor, driver: Actor, admin: Actor
    ) -> None:
        case = await core.create_case(case_data, operations)
        with pytest.raises(PermissionDeniedError):
            await core.transition_case(case.case_id, _S.ORDER_PREPARATION, driver)
        assert await _audit_actions(core, admin, category=AuditCategory.STATUS_CHANGE) == []

    async def test_audit_log_requires_permission(
        self, core: CaseBookingCore, operations: Actor
    ) -> None:
        with pytest.raises(PermissionDeniedError):
            await core.query_audit_log(operations)

    async def test_authenticate(
        self, core: CaseBookingCore, admin: Actor, settings: CoreSettings
    ) -> None:
        token = encode_token(user_id="sales-9", role=Role.SALES, secret=settings.jwt_secret)
        actor = await core.authenticate(token)
        assert actor.user_id == "sales-9"
        with pytest.raises(AuthenticationError):
            await core.authenticate("garbage")

        await core.audit.flush()
        failed = await core.query_audit_log(admin, AuditQuery(status=AuditStatus.WARNING))
        assert [e.action for e in failed] == ["Login Failed"]
        assert "User Login" in await _audit_actions(core, admin)


@pytest.mark.unit
class TestBulk:
    async def test_import_partial_success(
        self, core: CaseBookingCore, case_data: dict, admin: Actor, make_actor
    ) -> None:
        it = make_actor(Role.IT)
        summary = await core.import_cases(
            [case_data, {**case_data, "hospital": ""}, {**case_data, "country": "Malaysia"}],
            it,
        )
        assert len(summary.created) == 2
        assert [index for index, _ in summary.failed] == [1]
        assert summary.success is False
        assert summary.total == 3
        assert "Cases Imported" in await _audit_actions(core, admin)

    async def test_import_requires_permission(
        self, core: CaseBookingCore, case_data: dict, operations: Actor
    ) -> None:
        with pytest.raises(PermissionDeniedError):
            await core.import_cases([case_data], operations)

    async def test_export(
        self, core: CaseBookingCore, case_data: dict, operations: Actor, operations_manager: Actor
    ) -> None:
        await core.create_case(case_data, operations)
        rows = await core.export_cases(operations_manager)
        assert len(rows) == 1
        assert rows[0]["reference_number"].startswith("TMC-SINGAPORE-")
        assert "last_entry" not in rows[0]
        with pytest.raises(PermissionDeniedError):
            await core.export_cases(operations)
