"""Permission Resolution Engine.

Answers resolve(role, action) -> bool from an in-memory snapshot of the
permission matrix.

- Snapshot = static defaults (src/infra/auth/rbac.py) overlaid with the
  overrides held in the permissions collection
- The snapshot is immutable and replaced by reference; resolve() never
  performs I/O and never sees a half-built matrix
- admin resolves every action to True and its cells cannot be edited
- Freshness: a TTL bound (ensure_fresh) plus push invalidation from the
  store's change stream (start/close)
- Store unreachable at init or refresh: keep serving the last snapshot
  (degraded mode); mutations still fail
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from src.infra.audit.writer import AuditCategory
from src.infra.auth.rbac import PermissionAction, Role, default_allowed
from src.shared.errors import AdminImmutableError, PermissionDeniedError, StoreUnavailableError
from src.shared.types import PermissionEntry

if TYPE_CHECKING:
    from src.infra.audit.writer import AuditLogSink
    from src.permissions.store_adapter import PermissionStoreAdapter
    from src.ports.store_port import ChangeStream
    from src.shared.metrics import CaseBookingMetrics
    from src.shared.types import Actor

logger = logging.getLogger(__name__)

Snapshot = Mapping[tuple[Role, PermissionAction], bool]

_EDITABLE_ROLES = tuple(r for r in Role if r is not Role.ADMIN)


def default_snapshot() -> dict[tuple[Role, PermissionAction], bool]:
    """Every editable cell at its static default."""
    return {
        (role, action): default_allowed(role, action)
        for role in _EDITABLE_ROLES
        for action in PermissionAction
    }


def build_snapshot(overrides: list[PermissionEntry]) -> Snapshot:
    cells = default_snapshot()
    for entry in overrides:
        if entry.role is Role.ADMIN:
            continue
        cells[(entry.role, entry.action)] = entry.allowed
    return MappingProxyType(cells)


class PermissionEngine:
    """Runtime-editable RBAC matrix with a cached, push-invalidated snapshot.

    Lifecycle:
        engine = PermissionEngine(adapter, audit=sink)
        await engine.initialize()   # defaults + stored overrides
        await engine.start()        # push invalidation
        ...
        await engine.close()

    Also usable as ``async with engine:`` (initialize + start / close).
    """

    def __init__(
        self,
        adapter: PermissionStoreAdapter,
        *,
        audit: AuditLogSink | None = None,
        metrics: CaseBookingMetrics | None = None,
        ttl_seconds: float = 300.0,
        resubscribe_initial_s: float = 0.5,
        resubscribe_max_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._audit = audit
        self._metrics = metrics
        self._ttl = ttl_seconds
        self._backoff_initial = resubscribe_initial_s
        self._backoff_max = resubscribe_max_s
        self._clock = clock

        self._snapshot: Snapshot = build_snapshot([])
        self._loaded_at = clock()
        self._invalidated = False
        self._degraded = False

        self._watch_task: asyncio.Task[None] | None = None
        self._stream: ChangeStream | None = None
        self._closing = False

    # -- Lifecycle --

    async def initialize(self) -> None:
        """Load stored overrides; fall back to defaults if the store is down."""
        try:
            await self.refresh()
        except StoreUnavailableError:
            self._degraded = True
            self._invalidated = True
            logger.warning(
                "Permission store unreachable at startup; serving default matrix (degraded mode)",
            )

    async def start(self) -> None:
        """Subscribe to permission changes for push invalidation."""
        if self._watch_task is not None:
            return
        self._closing = False
        stream = await self._open_stream()
        self._stream = stream
        self._watch_task = asyncio.get_running_loop().create_task(self._watch(stream))

    async def close(self) -> None:
        """Tear down the push subscription."""
        self._closing = True
        if self._stream is not None:
            await self._stream.close()
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def __aenter__(self) -> PermissionEngine:
        await self.initialize()
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- Resolution (synchronous, no I/O) --

    def resolve(self, role: Role, action: PermissionAction) -> bool:
        if role is Role.ADMIN:
            return True
        return self._snapshot.get((role, action), False)

    def list_matrix(self) -> list[PermissionEntry]:
        """Every editable cell (admin excluded), grouped by role."""
        snapshot = self._snapshot
        return [
            PermissionEntry(action=action, role=role, allowed=snapshot[(role, action)])
            for role in _EDITABLE_ROLES
            for action in PermissionAction
        ]

    @property
    def is_degraded(self) -> bool:
        """True while the snapshot could not be loaded from the store."""
        return self._degraded

    @property
    def is_stale(self) -> bool:
        return self._invalidated or (self._clock() - self._loaded_at) > self._ttl

    # -- Mutation --

    async def set_entry(
        self,
        action: PermissionAction,
        role: Role,
        allowed: bool,
        *,
        actor: Actor,
    ) -> PermissionEntry:
        """Write one matrix cell through to the store.

        Raises:
            AdminImmutableError: role is admin.
            PermissionDeniedError: actor lacks manage-permissions.
            StoreUnavailableError: write failed; snapshot unchanged.
        """
        if role is Role.ADMIN:
            raise AdminImmutableError(action.value)
        if not self.resolve(actor.role, PermissionAction.MANAGE_PERMISSIONS):
            raise PermissionDeniedError(PermissionAction.MANAGE_PERMISSIONS.value)

        entry = PermissionEntry(action=action, role=role, allowed=allowed)
        old = self.resolve(role, action)
        await self._adapter.write(entry, updated_by=actor.user_id)
        self._apply_local(entry)

        logger.info(
            "Permission %s/%s set %s -> %s by %s",
            role.value,
            action.value,
            old,
            allowed,
            actor.user_id,
        )
        if self._audit is not None:
            self._audit.emit(
                actor=actor,
                action="Permission Changed",
                category=AuditCategory.PERMISSION,
                target=f"{role.value}/{action.value}",
                detail={
                    "role": role.value,
                    "permission": action.value,
                    "old": old,
                    "new": allowed,
                },
            )
        return entry

    async def reset_to_defaults(self, *, actor: Actor) -> list[PermissionEntry]:
        """Rewrite every cell that differs from its static default.

        Returns the cells that were changed. Each one is audited.
        """
        if not self.resolve(actor.role, PermissionAction.MANAGE_PERMISSIONS):
            raise PermissionDeniedError(PermissionAction.MANAGE_PERMISSIONS.value)
        changed: list[PermissionEntry] = []
        for (role, action), allowed in default_snapshot().items():
            if self.resolve(role, action) != allowed:
                changed.append(await self.set_entry(action, role, allowed, actor=actor))
        return changed

    def _apply_local(self, entry: PermissionEntry) -> None:
        cells = dict(self._snapshot)
        cells[(entry.role, entry.action)] = entry.allowed
        self._snapshot = MappingProxyType(cells)

    # -- Freshness --

    async def refresh(self) -> None:
        """Re-fetch the whole matrix and swap the snapshot.

        Raises:
            StoreUnavailableError: fetch failed; snapshot unchanged.
        """
        try:
            overrides = await self._adapter.fetch_all()
        except StoreUnavailableError:
            if self._metrics is not None:
                self._metrics.permission_refreshes.labels(outcome="failed").inc()
            raise
        self._snapshot = build_snapshot(overrides)
        self._loaded_at = self._clock()
        self._invalidated = False
        if self._degraded:
            logger.info("Permission store reachable again; leaving degraded mode")
        self._degraded = False
        if self._metrics is not None:
            self._metrics.permission_refreshes.labels(outcome="ok").inc()

    def invalidate(self) -> None:
        """Mark the snapshot stale; the next ensure_fresh() re-fetches."""
        self._invalidated = True

    async def ensure_fresh(self) -> None:
        """Refresh if stale. On failure, keep serving the cached snapshot."""
        if not self.is_stale:
            return
        try:
            await self.refresh()
        except StoreUnavailableError:
            self._degraded = True
            logger.warning("Permission refresh failed; serving cached matrix", exc_info=True)

    # -- Push invalidation --

    async def _open_stream(self) -> ChangeStream | None:
        """Subscribe, then re-read the matrix so nothing written before the
        subscription existed is missed. None if the feed is unreachable.
        """
        try:
            stream = await self._adapter.subscribe()
        except StoreUnavailableError:
            self.invalidate()
            logger.warning("Permission change feed unavailable")
            return None
        await self._on_change()
        return stream

    async def _watch(self, stream: ChangeStream | None) -> None:
        backoff = self._backoff_initial
        while not self._closing:
            if stream is None:
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._backoff_max)
                stream = await self._open_stream()
                continue

            self._stream = stream
            backoff = self._backoff_initial
            try:
                async for _event in stream:
                    await self._on_change()
            except StoreUnavailableError:
                logger.warning("Permission change stream dropped; resubscribing")
            finally:
                self._stream = None
                await stream.close()

            stream = None
            if self._closing:
                break
            self.invalidate()

    async def _on_change(self) -> None:
        try:
            await self.refresh()
        except StoreUnavailableError:
            self.invalidate()
            logger.warning("Refresh after permission change failed; snapshot invalidated")
