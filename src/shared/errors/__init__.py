"""Unified error hierarchy for the case booking core.

All domain errors inherit from CaseBookingError. Structural failures
(permission, transition, scope) are never retried; StaleStateError may be
retried once after re-reading the case; StoreUnavailableError fails
mutations outright.
"""

from __future__ import annotations

_NOT_PERMITTED = "Not permitted"


class CaseBookingError(Exception):
    """Base error for all case booking core exceptions."""

    def __init__(self, message: str, code: str = "CASE_BOOKING_ERROR") -> None:
        self.code = code
        super().__init__(message)


# -- Store errors (raised by StorePort implementations) --


class StoreUnavailableError(CaseBookingError):
    """The backing store (or its change feed) is unreachable."""

    def __init__(self, store_name: str, message: str = "") -> None:
        self.store_name = store_name
        super().__init__(
            message or f"Store {store_name} is unavailable",
            code="STORE_UNAVAILABLE",
        )


class StaleStateError(CaseBookingError):
    """Optimistic-concurrency conflict: the record changed underneath the caller."""

    def __init__(
        self,
        collection: str,
        record_id: str,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.collection = collection
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{collection}/{record_id} was modified concurrently; re-read and retry",
            code="STALE_STATE",
        )


# -- Auth errors --


class AuthenticationError(CaseBookingError):
    """Session token could not be resolved to an actor."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, code="AUTH_FAILED")


class PermissionDeniedError(CaseBookingError):
    """Actor's role does not resolve the required action to allowed.

    The message never names the action, so the matrix shape is not leaked
    to the client. The action is kept on the instance for server-side logs.
    """

    def __init__(self, required_action: str = "") -> None:
        self.required_action = required_action
        super().__init__(_NOT_PERMITTED, code="PERMISSION_DENIED")


class ScopeViolationError(CaseBookingError):
    """Case country/department is outside the actor's assigned scope."""

    def __init__(self, *, country: str = "", department: str = "") -> None:
        self.country = country
        self.department = department
        super().__init__(_NOT_PERMITTED, code="SCOPE_VIOLATION")


class AdminImmutableError(CaseBookingError):
    """Attempt to edit a permission matrix cell of the admin role."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(
            "Admin permissions are fixed and cannot be changed",
            code="ADMIN_IMMUTABLE",
        )


# -- Lifecycle errors --


class IllegalTransitionError(CaseBookingError):
    """Requested status is not a declared successor of the current status."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Case is {current}; {target} is not reachable from it",
            code="ILLEGAL_TRANSITION",
        )


class TerminalStateError(CaseBookingError):
    """Case is Closed or Cancelled and accepts no further changes."""

    def __init__(self, current: str) -> None:
        self.current = current
        super().__init__(
            f"Case is {current} and can no longer be changed",
            code="TERMINAL_STATE",
        )


# -- Domain errors --


class NotFoundError(CaseBookingError):
    """Requested resource not found."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
        )


class ValidationError(CaseBookingError):
    """Input validation failed."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message, code="VALIDATION")


__all__ = [
    "AdminImmutableError",
    "AuthenticationError",
    "CaseBookingError",
    "IllegalTransitionError",
    "NotFoundError",
    "PermissionDeniedError",
    "ScopeViolationError",
    "StaleStateError",
    "StoreUnavailableError",
    "TerminalStateError",
    "ValidationError",
]
