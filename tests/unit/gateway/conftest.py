"""Gateway test fixtures: app over MemoryStore with an isolated metrics registry."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from src.infra.auth.session import JWTIdentityProvider
from src.infra.store.memory import MemoryStore
from src.main import build_app
from src.shared.config import CoreSettings
from src.shared.metrics import CaseBookingMetrics
from src.shared.types import Actor

AuthHeaders = Callable[[Actor], dict[str, str]]


@pytest.fixture
def app(settings: CoreSettings) -> FastAPI:
    return build_app(
        settings,
        store=MemoryStore(),
        metrics=CaseBookingMetrics(registry=CollectorRegistry()),
    )


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings: CoreSettings) -> AuthHeaders:
    provider = JWTIdentityProvider(secret=settings.jwt_secret)

    def _headers(actor: Actor) -> dict[str, str]:
        return {"Authorization": f"Bearer {provider.issue(actor)}"}

    return _headers
