"""IdentityPort - resolves a session token to the acting user.

The core never sees credentials; login happens upstream and hands the
core an opaque session token. Implementations decide what the token is.

Implementations:
    JWTIdentityProvider (src/infra/auth/session.py) - signed HS256 tokens
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.shared.types import Actor


class IdentityPort(ABC):
    """Port: session token -> Actor."""

    @abstractmethod
    def resolve(self, session_token: str) -> Actor:
        """Return the actor behind a session token.

        Args:
            session_token: Opaque token issued at login.

        Returns:
            The Actor, including role and country/department scope.

        Raises:
            AuthenticationError: Missing, malformed, expired or forged token.
        """
