"""Rate limiter interfaces.

The HTTP layer should depend on this abstraction (not the concrete registry)
so the in-process limiter can be swapped for a shared store later with
minimal changes.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from tokengate.core.result import Result

# Failure reason codes shared by limiter implementations.
REASON_INVALID_KEY = "invalid_key"
REASON_REGISTRY_CLOSED = "registry_closed"
REASON_UNKNOWN_KEY = "unknown_key"
REASON_REFILL_UNAVAILABLE = "refill_unavailable"


@dataclass(frozen=True)
class Admission:
    """Outcome of one take, captured atomically with the bucket state.

    Attributes:
        granted: Whether a token was taken.
        limit: Bucket capacity.
        remaining: Tokens left right after this take.
    """

    granted: bool
    limit: int
    remaining: int


class AbstractRateLimiter(ABC):
    """Interface for keyed rate limiters."""

    @abstractmethod
    def try_take(self, key: str) -> Result[bool]:
        """Take one token from the bucket for ``key``.

        Args:
            key: Unique identifier (e.g., API key, IP address).

        Returns:
            ``Success(True)`` when admitted, ``Success(False)`` when the
            bucket is exhausted, or a Failure when the request could not be
            evaluated.
        """
        raise NotImplementedError

    @abstractmethod
    def admit(self, key: str) -> Result[Admission]:
        """Like ``try_take``, but also report the count left after the take."""
        raise NotImplementedError

    @abstractmethod
    def available_tokens(self, key: str) -> Result[int]:
        """Report the current token count for ``key`` without creating it."""
        raise NotImplementedError

    @abstractmethod
    def shutdown(self) -> None:
        """Stop background work and release all per-key state."""
        raise NotImplementedError


def hash_limiter_key(key: str) -> str:
    """Hash a limiter key for logging without exposing client identifiers."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]
