"""Application-level exception types.

Only caller-input faults and HTTP-facing denials are exceptions. Normal
denial paths inside the key manager (not found, owner mismatch, inactive,
expired, throttled) are ``None``/``False`` results, and backend I/O errors
propagate unmodified.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    http_status: int
    retry_after: float
    backend: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when caller input or configuration is invalid."""


class AuthenticationAppError(AppError):
    """Raised when a request carries no credential or an invalid one."""


class RateLimitAppError(AppError):
    """Raised when a credential exceeded its request-rate ceiling."""


def require(value: str | None, *, field: str, message: str) -> str:
    """Return ``value`` or raise ValidationAppError when it is empty.

    Args:
        value: Caller-supplied argument.
        field: Argument name, reported in the error details.
        message: Human-readable message.

    Raises:
        ValidationAppError: If ``value`` is ``None`` or empty.
    """
    if not value:
        raise ValidationAppError(
            code=f"missing_{field}",
            message=message,
            details={"field": field},
        )
    return value
