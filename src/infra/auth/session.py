"""JWT session tokens and the IdentityPort adapter built on them.

- No token -> AuthenticationError
- Invalid/expired token -> AuthenticationError
- Unknown role -> AuthenticationError (roles are a closed set)
- Valid token -> Actor(user_id, name, role, countries, departments)

Uses PyJWT (HS256). Secret must come from environment, never hardcoded.
"""

from __future__ import annotations

import time
from collections.abc import Iterable  # noqa: TC003 -- used at runtime in signature

import jwt

from src.infra.auth.rbac import Role, resolve_role
from src.ports.identity_port import IdentityPort
from src.shared.errors import AuthenticationError
from src.shared.types import Actor

_ALGORITHM = "HS256"


def encode_token(
    *,
    user_id: str,
    role: Role,
    secret: str,
    name: str = "",
    countries: Iterable[str] = (),
    departments: Iterable[str] = (),
    ttl_seconds: int = 3600,
) -> str:
    """Create a signed session token carrying the actor's role and scope."""
    now = int(time.time())
    payload = {
        "sub": user_id,
        "name": name,
        "role": role.value,
        "countries": sorted(countries),
        "departments": sorted(departments),
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_token(token: str, *, secret: str) -> Actor:
    """Decode and validate a session token. Raises AuthenticationError on failure."""
    if not token:
        raise AuthenticationError("Missing session token")
    try:
        data = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    user_id = data.get("sub")
    role = resolve_role(str(data.get("role", "")))
    if not user_id or role is None:
        raise AuthenticationError("Invalid token: missing subject or role")
    return Actor(
        user_id=str(user_id),
        role=role,
        name=str(data.get("name", "")),
        countries=frozenset(data.get("countries") or ()),
        departments=frozenset(data.get("departments") or ()),
    )


class JWTIdentityProvider(IdentityPort):
    """IdentityPort over HS256 session tokens."""

    def __init__(self, *, secret: str) -> None:
        if not secret:
            msg = "JWT secret must not be empty"
            raise ValueError(msg)
        self._secret = secret

    def resolve(self, session_token: str) -> Actor:
        return decode_token(session_token, secret=self._secret)

    def issue(self, actor: Actor, *, ttl_seconds: int = 3600) -> str:
        """Issue a token for an actor (used by login flows and tests)."""
        return encode_token(
            user_id=actor.user_id,
            role=actor.role,
            secret=self._secret,
            name=actor.name,
            countries=actor.countries,
            departments=actor.departments,
            ttl_seconds=ttl_seconds,
        )
