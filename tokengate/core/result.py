"""Two-variant result type for reporting outcomes without raising.

Limiter operations return a ``Result`` so callers branch on values instead of
catching exceptions. Exhausted buckets are reported as ``Success(False)``;
``Failure`` is reserved for requests the limiter could not evaluate at all
(e.g., an empty key or a closed registry).

Example:
    >>> success(3).map(lambda n: n + 1)
    Success(value=4)
    >>> failure("invalid_key").map(lambda n: n + 1)
    Failure(reason='invalid_key', details=None)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Successful outcome carrying the produced value."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def map(self, f: Callable[[T], U]) -> "Success[U]":
        """Apply ``f`` to the value and wrap the result."""
        return Success(f(self.value))

    def flat_map(self, f: Callable[[T], "Result[U]"]) -> "Result[U]":
        return f(self.value)

    def get_or_else(self, default: Any) -> T:
        return self.value

    def fold(self, on_success: Callable[[T], R], on_failure: Callable[["Failure"], R]) -> R:
        return on_success(self.value)


@dataclass(frozen=True)
class Failure:
    """Failed outcome carrying a machine-readable reason code.

    Attributes:
        reason: Stable reason code (e.g., ``"registry_closed"``).
        details: Optional structured context for logs and clients.
    """

    reason: str
    details: dict[str, Any] | None = None

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def map(self, f: Callable[[Any], Any]) -> "Failure":
        return self

    def flat_map(self, f: Callable[[Any], Any]) -> "Failure":
        return self

    def get_or_else(self, default: U) -> U:
        return default

    def fold(self, on_success: Callable[[Any], R], on_failure: Callable[["Failure"], R]) -> R:
        return on_failure(self)


Result = Union[Success[T], Failure]


def success(value: T) -> Success[T]:
    """Wrap ``value`` in a Success."""
    return Success(value)


def failure(reason: str, details: dict[str, Any] | None = None) -> Failure:
    """Wrap a reason code in a Failure."""
    return Failure(reason=reason, details=details)


def attempt(fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Result[T]":
    """Run ``fn`` and capture its outcome as a Result.

    Any ``Exception`` raised by ``fn`` becomes a Failure whose reason is the
    exception class name and whose details carry the message. Base exceptions
    such as ``KeyboardInterrupt`` still propagate.

    Args:
        fn: Callable to invoke.
        *args: Positional arguments for ``fn``.
        **kwargs: Keyword arguments for ``fn``.

    Returns:
        Success with the return value, or Failure describing the exception.
    """

    try:
        return Success(fn(*args, **kwargs))
    except Exception as exc:
        return Failure(reason=type(exc).__name__, details={"message": str(exc)})
