"""Bearer-token authentication for gateway requests.

- No token -> 401
- Invalid/expired token -> 401
- Valid token -> Actor stored on request.state.actor
- healthz/metrics/docs exempt

Token validation is delegated to the IdentityPort (JWT in production).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request  # noqa: TC002 -- resolved at runtime by FastAPI Depends

from src.shared.errors import AuthenticationError

if TYPE_CHECKING:
    from src.ports.identity_port import IdentityPort
    from src.shared.types import Actor


def extract_bearer(authorization: str) -> str | None:
    """Token from an "Authorization: Bearer <token>" header value."""
    if authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


class JWTAuthMiddleware:
    """Synchronous auth check for gateway requests.

    Exempt paths (healthz, docs) skip authentication entirely.
    """

    def __init__(
        self,
        *,
        identity: IdentityPort,
        exempt_paths: list[str] | None = None,
    ) -> None:
        self._identity = identity
        self._exempt_paths = set(exempt_paths or [])

    def is_exempt(self, path: str) -> bool:
        return path in self._exempt_paths

    def authenticate(self, *, token: str | None, path: str) -> Actor | None:
        """Authenticate request. Returns None for exempt paths.

        Raises AuthenticationError for missing/invalid tokens on
        non-exempt paths.
        """
        if self.is_exempt(path):
            return None

        if not token:
            raise AuthenticationError("Missing or malformed Authorization header")

        return self._identity.resolve(token)


def current_actor(request: Request) -> Actor:
    """FastAPI dependency: the Actor authenticated by the middleware."""
    actor: Actor | None = getattr(request.state, "actor", None)
    if actor is None:
        raise AuthenticationError("Not authenticated")
    return actor
