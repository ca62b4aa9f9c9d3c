"""Structured error logging handler.

- Error logs contain: error_code, stack_trace, context
- JSON structured output for log aggregation
- Sensitive fields (tokens, secrets) are redacted
- Expected domain rejections (denied, illegal transition) are logged at
  WARNING without a stack trace; unexpected failures at ERROR with one
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class StructuredError:
    """Structured representation of an error for logging."""

    error_code: str
    message: str
    stack_trace: str
    context: dict[str, Any] = field(default_factory=dict)
    actor_id: str = ""
    operation: str = ""
    request_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for JSON logging."""
        d = asdict(self)
        if "context" in d:
            d["context"] = _redact_sensitive(d["context"])
        return d


_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "session_token",
        "secret",
        "jwt_secret",
        "authorization",
        "cookie",
        "jwt",
        "credential",
    }
)


def _redact_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Redact values of sensitive keys."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in _SENSITIVE_KEYS:
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = _redact_sensitive(value)
        else:
            result[key] = value
    return result


def create_structured_error(
    exc: Exception,
    *,
    error_code: str = "",
    actor_id: str = "",
    operation: str = "",
    request_id: str = "",
    context: dict[str, Any] | None = None,
    include_stack: bool = True,
) -> StructuredError:
    """Create a StructuredError from an exception.

    If the exception has a `.code` attribute (CaseBookingError subclasses),
    it is used as the error_code unless overridden. Server-side detail
    carried on the exception (e.g. PermissionDeniedError.required_action)
    is folded into the context.
    """
    code = error_code or getattr(exc, "code", type(exc).__name__)
    stack = (
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        if include_stack
        else ""
    )
    ctx = dict(context or {})
    for attr in ("required_action", "current", "target", "country", "department"):
        value = getattr(exc, attr, None)
        if value:
            ctx.setdefault(attr, value)
    return StructuredError(
        error_code=code,
        message=str(exc),
        stack_trace=stack,
        context=ctx,
        actor_id=actor_id,
        operation=operation,
        request_id=request_id,
    )


def log_structured_error(
    logger: logging.Logger,
    exc: Exception,
    *,
    error_code: str = "",
    actor_id: str = "",
    operation: str = "",
    request_id: str = "",
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Log an exception as a structured error.

    Stack traces are only captured at ERROR and above.
    Returns the StructuredError for further processing (e.g. metrics).
    """
    structured = create_structured_error(
        exc,
        error_code=error_code,
        actor_id=actor_id,
        operation=operation,
        request_id=request_id,
        context=context,
        include_stack=level >= logging.ERROR,
    )
    logger.log(level, "structured_error", extra={"structured_error": structured.to_dict()})
    return structured
