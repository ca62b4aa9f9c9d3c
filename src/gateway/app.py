"""FastAPI application factory for the case booking API.

- User API:  /api/v1/*  (bearer-token authenticated)
- healthz, metrics, docs: exempt from auth
- CaseBookingError subclasses map onto HTTP status codes; permission and
  scope rejections render as a bare "Not permitted"
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import Match

from src.gateway.middleware.auth import JWTAuthMiddleware, extract_bearer
from src.shared.errors import (
    AdminImmutableError,
    AuthenticationError,
    CaseBookingError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ScopeViolationError,
    StaleStateError,
    StoreUnavailableError,
    TerminalStateError,
    ValidationError,
)
from src.shared.logging.error_handler import log_structured_error

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from src.ports.identity_port import IdentityPort

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset(
    {
        "/healthz",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
    }
)

# Exception type -> HTTP status; first match wins (subclasses before bases).
_STATUS_MAP: tuple[tuple[type[CaseBookingError], int], ...] = (
    (AuthenticationError, 401),
    (PermissionDeniedError, 403),
    (ScopeViolationError, 403),
    (AdminImmutableError, 403),
    (NotFoundError, 404),
    (IllegalTransitionError, 409),
    (TerminalStateError, 409),
    (StaleStateError, 409),
    (ValidationError, 422),
    (StoreUnavailableError, 503),
)


def status_for(exc: CaseBookingError) -> int:
    for exc_type, status in _STATUS_MAP:
        if isinstance(exc, exc_type):
            return status
    return 500


def _error_body(exc: CaseBookingError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": exc.code, "message": str(exc)}
    if isinstance(exc, IllegalTransitionError):
        body["current_status"] = exc.current
        body["requested_status"] = exc.target
    elif isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    return body


def create_app(
    *,
    identity: IdentityPort,
    cors_origins: list[str] | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        identity: Resolves bearer tokens to actors.
        cors_origins: Allowed CORS origins (none = CORS disabled).
        lifespan: Async context manager factory for startup/shutdown lifecycle.

    Returns:
        Configured FastAPI application; routers are mounted by the caller.
    """
    app = FastAPI(
        title="Case Booking API",
        description="Surgical case booking, fulfillment tracking and permissions",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    auth = JWTAuthMiddleware(identity=identity, exempt_paths=list(_EXEMPT_PATHS))
    app.state.auth = auth

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH"],
            allow_headers=["Authorization", "Content-Type"],
        )

    # -- Error handlers --

    @app.exception_handler(CaseBookingError)
    async def _case_booking_error(request: Request, exc: CaseBookingError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            log_structured_error(
                logger,
                exc,
                operation=f"{request.method} {request.url.path}",
            )
        return JSONResponse(status_code=status, content=_error_body(exc))

    # Uniform {error, message} schema for Starlette's own HTTP errors
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code_map = {
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": code_map.get(exc.status_code, "HTTP_ERROR"),
                "message": exc.detail or f"HTTP {exc.status_code}",
            },
        )

    # -- Auth middleware (ASGI) --

    @app.middleware("http")
    async def jwt_auth_middleware(request: Request, call_next: Any) -> Response:
        # CORS preflight (OPTIONS) must pass through to CORSMiddleware
        if request.method == "OPTIONS" or auth.is_exempt(request.url.path):
            return await call_next(request)

        # Unknown paths return 404, not 401
        route_matched = any(route.matches(request.scope)[0] != Match.NONE for route in app.routes)
        if not route_matched:
            return await call_next(request)

        token = extract_bearer(request.headers.get("authorization", ""))
        try:
            actor = auth.authenticate(token=token, path=request.url.path)
        except AuthenticationError as exc:
            return JSONResponse(status_code=401, content=_error_body(exc))

        request.state.actor = actor
        return await call_next(request)

    # -- Exempt routes --

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", tags=["system"], include_in_schema=False)
    async def metrics() -> Response:
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app
