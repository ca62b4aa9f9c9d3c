"""Root conftest - shared fixtures for all test layers.

Markers:
    @pytest.mark.unit        - No external deps
    @pytest.mark.smoke       - Fast subset, through the HTTP gateway
    @pytest.mark.integration - Needs running PostgreSQL and Redis
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import date

import pytest
from prometheus_client import CollectorRegistry

from src.core import CaseBookingCore
from src.infra.auth.rbac import Role
from src.infra.store.memory import MemoryStore
from src.main import build_core
from src.permissions.engine import PermissionEngine
from src.permissions.store_adapter import PermissionStoreAdapter
from src.shared.config import CoreSettings
from src.shared.metrics import CaseBookingMetrics
from src.shared.types import Actor

TEST_JWT_SECRET = "test-secret-key-for-case-booking"

SG = "Singapore"
CARDIO = "Cardiology"

ActorFactory = Callable[..., Actor]


@pytest.fixture
def make_actor() -> ActorFactory:
    """Actor factory scoped to Singapore/Cardiology unless told otherwise."""

    def _make(
        role: Role,
        user_id: str | None = None,
        *,
        countries: tuple[str, ...] = (SG,),
        departments: tuple[str, ...] = (CARDIO,),
    ) -> Actor:
        return Actor(
            user_id=user_id or f"{role.value}-1",
            role=role,
            name=f"Test {role.value}",
            countries=frozenset(countries),
            departments=frozenset(departments),
        )

    return _make


@pytest.fixture
def admin(make_actor: ActorFactory) -> Actor:
    return make_actor(Role.ADMIN, countries=(), departments=())


@pytest.fixture
def operations(make_actor: ActorFactory) -> Actor:
    return make_actor(Role.OPERATIONS)


@pytest.fixture
def operations_manager(make_actor: ActorFactory) -> Actor:
    return make_actor(Role.OPERATIONS_MANAGER)


@pytest.fixture
def sales(make_actor: ActorFactory) -> Actor:
    return make_actor(Role.SALES)


@pytest.fixture
def driver(make_actor: ActorFactory) -> Actor:
    return make_actor(Role.DRIVER)


@pytest.fixture
def case_data() -> dict:
    """Valid create-case input inside the default actor scope."""
    return {
        "hospital": "Mount Elizabeth",
        "department": CARDIO,
        "country": SG,
        "date_of_surgery": date(2026, 11, 3).isoformat(),
        "procedure_type": "Knee",
        "procedure_name": "Total knee replacement",
        "doctor_name": "Dr Tan",
        "surgery_sets": [{"name": "Knee Set A", "quantity": 1}],
        "implant_boxes": [{"name": "Implant Box 7", "quantity": 2}],
    }


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def metrics() -> CaseBookingMetrics:
    return CaseBookingMetrics(registry=CollectorRegistry())


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
async def engine(store: MemoryStore) -> AsyncIterator[PermissionEngine]:
    """Initialized permission engine without push subscription."""
    permission_engine = PermissionEngine(PermissionStoreAdapter(store))
    await permission_engine.initialize()
    yield permission_engine
    await permission_engine.close()


@pytest.fixture
async def core(
    settings: CoreSettings,
    store: MemoryStore,
    metrics: CaseBookingMetrics,
) -> AsyncIterator[CaseBookingCore]:
    """Started core over the in-memory store."""
    assembly = build_core(settings, store=store, metrics=metrics)
    await assembly.core.start()
    yield assembly.core
    await assembly.aclose()
