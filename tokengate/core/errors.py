"""Application-level exception types.

This module defines domain errors used across the limiter core and the HTTP
host, enabling consistent error handling, logging, and API responses.

Admission denials are not errors: they are returned as ``Success(False)``
values (see ``tokengate.core.result``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep shapes consistent without forcing every
    error to populate every field.
    """

    code: str
    message: str
    hint: str
    field: str
    actual_value: Any
    capacity: int
    available_tokens: int
    http_status: int
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
    """Raised when input/config validation fails."""


class InvalidConfigurationError(ValidationAppError):
    """Raised when a limiter is constructed with non-positive parameters."""

    def __init__(self, field: str, actual_value: Any) -> None:
        super().__init__(
            code="invalid_configuration",
            message=f"{field} must be positive (got {actual_value!r})",
            details={"field": field, "actual_value": actual_value},
        )


class InternalInconsistencyError(AppError):
    """Raised when a token count is observed outside ``[0, capacity]``.

    Atomic updates make this unreachable; seeing it means a logic defect.
    """

    def __init__(self, available_tokens: int, capacity: int) -> None:
        super().__init__(
            code="internal_inconsistency",
            message=(
                f"token count {available_tokens} outside of [0, {capacity}]"
            ),
            details={"available_tokens": available_tokens, "capacity": capacity},
        )
