"""CaseService tests.

Validates:
- Create: Booked, unique reference number, scope enforced
- Status change and its history entry are written together
- Versioned writes: a stale case is rejected
- A history entry whose ledger append failed is flushed on the next load
- No mutation overwrites a history entry that has not reached the ledger
- Listing filters and scope
"""

from __future__ import annotations

import asyncio

import pytest

from src.cases.history import HistoryLedger
from src.cases.lifecycle import CaseLifecycle
from src.cases.reference import ReferenceNumberGenerator
from src.cases.service import CaseDraft, CaseFilter, CaseService
from src.infra.auth.rbac import Role
from src.infra.store.memory import MemoryStore
from src.permissions.engine import PermissionEngine
from src.permissions.store_adapter import PermissionStoreAdapter
from src.ports.store_port import CASE_STATUS_HISTORY, CASES
from src.shared.errors import (
    NotFoundError,
    ScopeViolationError,
    StaleStateError,
    StoreUnavailableError,
    ValidationError,
)
from src.shared.types import CaseStatus, StatusHistoryEntry
from tests.fakes import FlakyStore, InterleavingStore

_S = CaseStatus


def _service(store: MemoryStore) -> CaseService:
    engine = PermissionEngine(PermissionStoreAdapter(store))
    return CaseService(
        store,
        lifecycle=CaseLifecycle(engine),
        ledger=HistoryLedger(store),
        references=ReferenceNumberGenerator(store),
    )


@pytest.mark.unit
class TestCaseDraft:
    def test_from_mapping(self, case_data: dict) -> None:
        draft = CaseDraft.from_mapping(case_data)
        assert draft.surgery_sets[0].name == "Knee Set A"
        assert draft.implant_boxes[0].quantity == 2
        assert draft.date_of_surgery.isoformat() == "2026-11-03"

    @pytest.mark.parametrize("missing", ["hospital", "country", "procedure_name"])
    def test_required_fields(self, case_data: dict, missing: str) -> None:
        del case_data[missing]
        with pytest.raises(ValidationError) as exc_info:
            CaseDraft.from_mapping(case_data)
        assert exc_info.value.field == missing

    def test_unknown_field(self, case_data: dict) -> None:
        with pytest.raises(ValidationError, match="status"):
            CaseDraft.from_mapping({**case_data, "status": "Closed"})

    def test_blank_required_field(self, case_data: dict) -> None:
        with pytest.raises(ValidationError):
            CaseDraft.from_mapping({**case_data, "hospital": "  "})


@pytest.mark.unit
class TestCreate:
    async def test_create_booked(self, store: MemoryStore, case_data: dict, operations) -> None:
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        assert case.status is _S.BOOKED
        assert case.reference_number == "TMC-SINGAPORE-" + str(case.created_at.year) + "-001"
        assert case.created_by == operations.user_id
        assert case.version == 1
        assert (await service.load(case.case_id)) == case

    async def test_create_outside_scope(self, store: MemoryStore, case_data: dict, make_actor) -> None:
        outsider = make_actor(Role.OPERATIONS, countries=("Malaysia",))
        with pytest.raises(ScopeViolationError):
            await _service(store).create(CaseDraft.from_mapping(case_data), outsider)
        assert store.count(CASES) == 0

    async def test_concurrent_creates_unique_references(
        self, case_data: dict, operations
    ) -> None:
        store = InterleavingStore()
        service = _service(store)
        draft = CaseDraft.from_mapping(case_data)
        cases = await asyncio.gather(*(service.create(draft, operations) for _ in range(5)))
        assert len({c.reference_number for c in cases}) == 5
        assert len({c.case_id for c in cases}) == 5

    async def test_load_missing(self, store: MemoryStore) -> None:
        with pytest.raises(NotFoundError):
            await _service(store).load("nope")


@pytest.mark.unit
class TestTransition:
    async def test_status_and_history_together(
        self, store: MemoryStore, case_data: dict, operations
    ) -> None:
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        outcome = await service.transition(case, _S.ORDER_PREPARATION, operations)

        assert outcome.case.status is _S.ORDER_PREPARATION
        assert outcome.case.version == 2
        history = await service.history(outcome.case)
        assert [(e.from_status, e.to_status) for e in history.status_history] == [
            (_S.BOOKED, _S.ORDER_PREPARATION)
        ]
        assert store.count(CASE_STATUS_HISTORY) == 1

    async def test_stale_case_rejected(
        self, store: MemoryStore, case_data: dict, operations
    ) -> None:
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        await service.transition(case, _S.ORDER_PREPARATION, operations)
        with pytest.raises(StaleStateError):
            await service.amend(case, {"doctor_name": "Dr Lim"}, operations)
        assert store.count(CASE_STATUS_HISTORY) == 1

    async def test_noop_writes_nothing(
        self, store: MemoryStore, case_data: dict, operations
    ) -> None:
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        outcome = await service.transition(case, _S.BOOKED, operations)
        assert outcome.changed is False
        assert (await service.load(case.case_id)).version == 1

    async def test_concurrent_conflicting_transitions_one_wins(
        self, case_data: dict, operations, operations_manager
    ) -> None:
        store = InterleavingStore()
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        for target in (_S.ORDER_PREPARATION, _S.ORDER_PREPARED):
            case = (await service.transition(case, target, operations)).case

        results = await asyncio.gather(
            service.transition(case, _S.PENDING_DELIVERY_HOSPITAL, operations),
            service.transition(case, _S.CANCELLED, operations_manager),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StaleStateError)

        final = await service.load(case.case_id)
        assert final.status is winners[0].case.status
        history = await service.history(final)
        assert [e.to_status for e in history.status_history][-1] is final.status
        assert len(history.status_history) == 3


@pytest.mark.unit
class TestOutbox:
    async def test_ledger_failure_flushed_on_next_load(self, case_data: dict, operations) -> None:
        store = FlakyStore()
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)

        store.down.add(CASE_STATUS_HISTORY)
        outcome = await service.transition(case, _S.ORDER_PREPARATION, operations)
        assert outcome.case.status is _S.ORDER_PREPARATION
        assert store.count(CASE_STATUS_HISTORY) == 0

        store.down.clear()
        pending = await _service(store).history(outcome.case)
        assert len(pending.status_history) == 1

        reloaded = await service.load(case.case_id)
        assert store.count(CASE_STATUS_HISTORY) == 1
        history = await service.history(reloaded)
        assert len(history.status_history) == 1
        assert isinstance(history.status_history[0], StatusHistoryEntry)

    async def test_history_merges_pending_entry(self, case_data: dict, operations) -> None:
        store = FlakyStore()
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)
        store.down.add(CASE_STATUS_HISTORY)
        outcome = await service.transition(case, _S.ORDER_PREPARATION, operations)
        store.down.clear()
        # Ledger still empty; the entry lives only in the case row.
        history = await service.history(outcome.case)
        assert [e.sequence for e in history.status_history] == [1]


@pytest.mark.unit
class TestListCases:
    async def test_scope_and_filters(self, store: MemoryStore, case_data: dict, admin, make_actor) -> None:
        service = _service(store)
        await service.create(CaseDraft.from_mapping(case_data), admin)
        await service.create(
            CaseDraft.from_mapping({**case_data, "country": "Malaysia"}),
            admin,
        )
        sg_ops = make_actor(Role.OPERATIONS)
        assert len(await service.list_cases(sg_ops)) == 1
        assert len(await service.list_cases(admin)) == 2
        assert len(await service.list_cases(admin, CaseFilter(country="Malaysia"))) == 1
        assert await service.list_cases(admin, CaseFilter(status=_S.CLOSED)) == []

    async def test_sorted_by_surgery_date(self, store: MemoryStore, case_data: dict, admin) -> None:
        service = _service(store)
        await service.create(
            CaseDraft.from_mapping({**case_data, "date_of_surgery": "2026-12-01"}), admin
        )
        await service.create(
            CaseDraft.from_mapping({**case_data, "date_of_surgery": "2026-11-01"}), admin
        )
        dates = [c.date_of_surgery.isoformat() for c in await service.list_cases(admin)]
        assert dates == ["2026-11-01", "2026-12-01"]


@pytest.mark.unit
class TestPendingEntryGuard:
    async def test_mutation_refused_while_entry_unflushed(self, case_data: dict, operations) -> None:
        store = FlakyStore()
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)

        store.down.add(CASE_STATUS_HISTORY)
        await service.transition(case, _S.ORDER_PREPARATION, operations)
        loaded = await service.load(case.case_id)
        with pytest.raises(StoreUnavailableError):
            await service.transition(loaded, _S.ORDER_PREPARED, operations)

        unchanged = await service.load(case.case_id)
        assert unchanged.status is _S.ORDER_PREPARATION
        assert unchanged.last_entry is not None
        assert unchanged.last_entry.sequence == 1

        store.down.clear()
        outcome = await service.transition(
            await service.load(case.case_id), _S.ORDER_PREPARED, operations
        )
        history = await service.history(outcome.case)
        assert [(e.sequence, e.to_status) for e in history.status_history] == [
            (1, _S.ORDER_PREPARATION),
            (2, _S.ORDER_PREPARED),
        ]
        assert store.count(CASE_STATUS_HISTORY) == 2

    async def test_amend_refused_while_entry_unflushed(self, case_data: dict, operations) -> None:
        store = FlakyStore()
        service = _service(store)
        case = await service.create(CaseDraft.from_mapping(case_data), operations)

        store.down.add(CASE_STATUS_HISTORY)
        await service.transition(case, _S.ORDER_PREPARATION, operations)
        loaded = await service.load(case.case_id)
        with pytest.raises(StoreUnavailableError):
            await service.amend(loaded, {"doctor_name": "Dr Lim"}, operations)
        assert (await service.load(case.case_id)).doctor_name == "Dr Tan"
