"""Audit log API.

- GET /api/v1/audit -> filtered audit events, newest first (view-audit-logs)
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - needed at runtime by FastAPI
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from src.gateway.middleware.auth import current_actor
from src.infra.audit.writer import AuditCategory, AuditEvent, AuditQuery, AuditStatus
from src.shared.errors import ValidationError
from src.shared.types import Actor

if TYPE_CHECKING:
    from src.core import CaseBookingCore


class AuditEventResponse(BaseModel):
    id: str
    timestamp: datetime
    actor_id: str
    actor_name: str
    actor_role: str
    action: str
    category: str
    target: str
    detail: dict[str, Any]
    status: str
    country: str | None = None
    department: str | None = None


class AuditListResponse(BaseModel):
    events: list[AuditEventResponse]
    total: int


def _to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        timestamp=event.timestamp,
        actor_id=event.actor_id,
        actor_name=event.actor_name,
        actor_role=event.actor_role,
        action=event.action,
        category=event.category.value,
        target=event.target,
        detail=event.detail,
        status=event.status.value,
        country=event.country,
        department=event.department,
    )


def create_audit_router(*, core: CaseBookingCore) -> APIRouter:
    """Create audit log router."""
    router = APIRouter(prefix="/api/v1/audit", tags=["audit"])

    @router.get("", response_model=AuditListResponse)
    async def query_audit(
        actor: Annotated[Actor, Depends(current_actor)],
        user_id: str | None = None,
        role: str | None = None,
        category: str | None = None,
        action: str | None = None,
        status: str | None = None,
        country: str | None = None,
        department: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    ) -> AuditListResponse:
        try:
            parsed_category = AuditCategory(category) if category else None
            parsed_status = AuditStatus(status) if status else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        events = await core.query_audit_log(
            actor,
            AuditQuery(
                actor_id=user_id,
                actor_role=role,
                category=parsed_category,
                action_contains=action,
                status=parsed_status,
                country=country,
                department=department,
                since=since,
                until=until,
                limit=limit,
            ),
        )
        return AuditListResponse(events=[_to_response(e) for e in events], total=len(events))

    return router
