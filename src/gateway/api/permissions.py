"""Permission matrix API.

- GET  /api/v1/permissions                   -> full editable matrix
- GET  /api/v1/permissions/{role}/{action}   -> resolve one cell
- PUT  /api/v1/permissions/{role}/{action}   -> set one cell (manage-permissions)
- POST /api/v1/permissions/reset             -> restore static defaults
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.gateway.middleware.auth import current_actor
from src.infra.auth.rbac import PermissionAction, Role, resolve_action, resolve_role
from src.shared.errors import NotFoundError
from src.shared.types import Actor, PermissionEntry

if TYPE_CHECKING:
    from src.core import CaseBookingCore


class PermissionEntryResponse(BaseModel):
    role: str
    action: str
    allowed: bool


class PermissionMatrixResponse(BaseModel):
    entries: list[PermissionEntryResponse]
    total: int


class SetPermissionRequest(BaseModel):
    allowed: bool


def _to_response(entry: PermissionEntry) -> PermissionEntryResponse:
    return PermissionEntryResponse(
        role=entry.role.value,
        action=entry.action.value,
        allowed=entry.allowed,
    )


def _parse_cell(role: str, action: str) -> tuple[Role, PermissionAction]:
    parsed_role = resolve_role(role)
    if parsed_role is None:
        raise NotFoundError("Role", role)
    parsed_action = resolve_action(action)
    if parsed_action is None:
        raise NotFoundError("Permission", action)
    return parsed_role, parsed_action


def create_permission_router(*, core: CaseBookingCore) -> APIRouter:
    """Create permission matrix router."""
    router = APIRouter(prefix="/api/v1/permissions", tags=["permissions"])

    @router.get("", response_model=PermissionMatrixResponse)
    async def list_matrix(
        _actor: Annotated[Actor, Depends(current_actor)],
    ) -> PermissionMatrixResponse:
        entries = [_to_response(e) for e in core.list_permission_matrix()]
        return PermissionMatrixResponse(entries=entries, total=len(entries))

    @router.post("/reset", response_model=PermissionMatrixResponse)
    async def reset_matrix(
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> PermissionMatrixResponse:
        """Restore defaults; returns only the cells that changed."""
        changed = await core.reset_permissions(actor=actor)
        entries = [_to_response(e) for e in changed]
        return PermissionMatrixResponse(entries=entries, total=len(entries))

    @router.get("/{role}/{action}", response_model=PermissionEntryResponse)
    async def resolve_cell(
        role: str,
        action: str,
        _actor: Annotated[Actor, Depends(current_actor)],
    ) -> PermissionEntryResponse:
        parsed_role, parsed_action = _parse_cell(role, action)
        return PermissionEntryResponse(
            role=parsed_role.value,
            action=parsed_action.value,
            allowed=core.resolve_permission(parsed_role, parsed_action),
        )

    @router.put("/{role}/{action}", response_model=PermissionEntryResponse)
    async def set_cell(
        role: str,
        action: str,
        body: SetPermissionRequest,
        actor: Annotated[Actor, Depends(current_actor)],
    ) -> PermissionEntryResponse:
        parsed_role, parsed_action = _parse_cell(role, action)
        entry = await core.set_permission(parsed_action, parsed_role, body.allowed, actor=actor)
        return _to_response(entry)

    return router
