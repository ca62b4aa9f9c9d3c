"""Application composition root -- wires all layers into a runnable FastAPI app.

- Reads configuration from environment variables (CoreSettings)
- Picks the StorePort strategy: SqlStore + RedisChangeFeed, or MemoryStore
- Instantiates the permission engine, case service, audit sink and facade
- Mounts the permission, case and audit routers
- Lifespan: load the permission matrix and subscribe to its changes on
  startup; drain audit events and release connections on shutdown

Entry point: uvicorn src.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI

from src.cases.history import HistoryLedger
from src.cases.lifecycle import CaseLifecycle, TransitionPolicy
from src.cases.reference import ReferenceNumberGenerator
from src.cases.service import CaseService
from src.core import CaseBookingCore
from src.gateway.api.audit import create_audit_router
from src.gateway.api.cases import create_case_router
from src.gateway.api.permissions import create_permission_router
from src.gateway.app import create_app
from src.infra.audit.writer import AuditLogSink
from src.infra.auth.session import JWTIdentityProvider
from src.infra.db import create_db_engine, create_session_factory
from src.infra.events.redis_feed import RedisChangeFeed
from src.infra.store.memory import MemoryStore
from src.infra.store.sql import SqlStore
from src.permissions.engine import PermissionEngine
from src.permissions.store_adapter import PermissionStoreAdapter
from src.ports.store_port import StorePort  # noqa: TC001 -- dataclass field type
from src.shared.config import CoreSettings
from src.shared.metrics import CaseBookingMetrics

logger = logging.getLogger(__name__)


@dataclass
class CoreAssembly:
    """Everything build_core() wired, plus the teardown hooks it owns."""

    core: CaseBookingCore
    identity: JWTIdentityProvider
    store: StorePort
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.core.close()
        for closer in self.closers:
            await closer()


def build_store(settings: CoreSettings) -> tuple[StorePort, list[Callable[[], Awaitable[None]]]]:
    """StorePort strategy selected by STORE_BACKEND."""
    if settings.store_backend == "memory":
        logger.info("Using in-memory store (STORE_BACKEND=memory)")
        return MemoryStore(), []

    db_engine = create_db_engine(settings.database_url)
    feed = RedisChangeFeed(settings.redis_url)
    store = SqlStore(session_factory=create_session_factory(db_engine), feed=feed)
    logger.info("Using PostgreSQL store with Redis change feed")
    return store, [feed.close, db_engine.dispose]


def build_core(
    settings: CoreSettings,
    *,
    store: StorePort | None = None,
    metrics: CaseBookingMetrics | None = None,
) -> CoreAssembly:
    """Wire the core. This is the single place adapters are instantiated."""
    closers: list[Callable[[], Awaitable[None]]] = []
    if store is None:
        store, closers = build_store(settings)

    metrics = metrics or CaseBookingMetrics()
    audit = AuditLogSink(store, queue_size=settings.audit_queue_size)
    permissions = PermissionEngine(
        PermissionStoreAdapter(store),
        audit=audit,
        metrics=metrics,
        ttl_seconds=settings.permission_cache_ttl_seconds,
    )
    lifecycle = CaseLifecycle(
        permissions,
        policy=TransitionPolicy.with_overrides(settings.transition_action_overrides),
    )
    cases = CaseService(
        store,
        lifecycle=lifecycle,
        ledger=HistoryLedger(store),
        references=ReferenceNumberGenerator(store),
    )
    identity = JWTIdentityProvider(secret=settings.jwt_secret)
    core = CaseBookingCore(
        permissions=permissions,
        cases=cases,
        audit=audit,
        identity=identity,
        metrics=metrics,
    )
    return CoreAssembly(core=core, identity=identity, store=store, closers=closers)


def build_app(
    settings: CoreSettings | None = None,
    *,
    store: StorePort | None = None,
    metrics: CaseBookingMetrics | None = None,
) -> FastAPI:
    """Build the application: instantiate adapters, wire dependencies, mount routers."""
    settings = settings or CoreSettings.from_env()
    assembly = build_core(settings, store=store, metrics=metrics)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await assembly.core.start()
        logger.info("Case booking core started")
        try:
            yield
        finally:
            await assembly.aclose()
            logger.info("Case booking core stopped")

    application = create_app(
        identity=assembly.identity,
        cors_origins=settings.cors_origins,
        lifespan=lifespan,
    )
    application.state.core = assembly.core
    application.state.store = assembly.store

    application.include_router(create_permission_router(core=assembly.core))
    application.include_router(create_case_router(core=assembly.core))
    application.include_router(create_audit_router(core=assembly.core))

    logger.info(
        "Case booking app assembled: %d routes mounted",
        len(application.routes),
    )
    return application


def __getattr__(name: str) -> FastAPI:
    # Built lazily so importing this module (tests, tooling) needs no environment.
    if name == "app":
        application = build_app()
        globals()["app"] = application
        return application
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
