"""Single-key token bucket.

Notes:
- A fresh bucket starts full (``capacity`` tokens).
- ``refill()`` is driven externally (see ``scheduler.RefillScheduler``); the
  bucket never reads a clock.
- One lock per bucket guards the count, so unrelated keys never contend.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from tokengate.adapters.rate_limit.base import Admission
from tokengate.core.errors import InternalInconsistencyError, InvalidConfigurationError
from tokengate.core.result import Result, Success


def _require_positive_int(field: str, value: object) -> None:
    # bool is an int subclass; True is not a meaningful capacity.
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidConfigurationError(field, value)


@dataclass(frozen=True)
class BucketConfig:
    """Validated token bucket policy.

    Attributes:
        capacity: Maximum tokens the bucket may hold.
        refill_rate: Tokens added per refill interval.
        refill_interval_ms: Milliseconds between refills.

    Raises:
        InvalidConfigurationError: If any value is not a positive integer.
    """

    capacity: int
    refill_rate: int
    refill_interval_ms: int

    def __post_init__(self) -> None:
        _require_positive_int("capacity", self.capacity)
        _require_positive_int("refill_rate", self.refill_rate)
        _require_positive_int("refill_interval_ms", self.refill_interval_ms)

    @property
    def refill_interval_seconds(self) -> float:
        return self.refill_interval_ms / 1000.0


class TokenBucket:
    """Capacity-bounded token counter with atomic take and refill.

    ``try_take`` and ``refill`` may be called concurrently from caller threads
    and the refill scheduler; both run under the bucket lock, so the sequence
    of operations on one bucket is linearizable.
    """

    def __init__(self, config: BucketConfig) -> None:
        self._config = config
        self._tokens = config.capacity
        self._lock = threading.Lock()

    @classmethod
    def create(cls, *, capacity: int, refill_rate: int, refill_interval_ms: int) -> "TokenBucket":
        """Build a bucket from raw values, validating them first."""
        return cls(
            BucketConfig(
                capacity=capacity,
                refill_rate=refill_rate,
                refill_interval_ms=refill_interval_ms,
            )
        )

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"TokenBucket(capacity={self.capacity}, refill_rate={self.refill_rate}, "
            f"refill_interval_ms={self.refill_interval_ms}, tokens={self._tokens})"
        )

    @property
    def config(self) -> BucketConfig:
        return self._config

    @property
    def capacity(self) -> int:
        return self._config.capacity

    @property
    def refill_rate(self) -> int:
        return self._config.refill_rate

    @property
    def refill_interval_ms(self) -> int:
        return self._config.refill_interval_ms

    @property
    def available_tokens(self) -> int:
        with self._lock:
            return self._tokens

    def try_take(self) -> Result[bool]:
        """Consume one token if any is available.

        Returns:
            ``Success(True)`` when a token was taken, ``Success(False)`` when
            the bucket is empty. Exhaustion is never reported as a Failure.
        """

        with self._lock:
            if self._tokens == 0:
                return Success(False)
            self._tokens -= 1
            self._check_invariant_locked()
            return Success(True)

    def refill(self) -> int:
        """Add ``refill_rate`` tokens, clamped at ``capacity``.

        Returns:
            The token count after the refill.
        """

        with self._lock:
            self._tokens = min(self._config.capacity, self._tokens + self._config.refill_rate)
            self._check_invariant_locked()
            return self._tokens

    def _check_invariant_locked(self) -> None:
        if not 0 <= self._tokens <= self._config.capacity:
            raise InternalInconsistencyError(self._tokens, self._config.capacity)
    def try_take(self) -> Result[bool]:
        """Consume one token if any is available.

        Returns:
            ``Success(True)`` when a token was taken, ``Success(False)`` when
            the bucket is empty. Exhaustion is never reported as a Failure.
        """

        return self.admit().map(lambda admission: admission.granted)

    def admit(self) -> Result[Admission]:
        """Consume one token and report the count left, in one locked step."""

        with self._lock:
            if self._tokens == 0:
                return Success(Admission(granted=False, limit=self._config.capacity, remaining=0))
            self._tokens -= 1
            self._check_invariant_locked()
            return Success(
                Admission(granted=True, limit=self._config.capacity, remaining=self._tokens)
            )

    def refill(self) -> int:
        """Add ``refill_rate`` tokens, clamped at ``capacity``.

        Returns:
            The token count after the refill.
        """

        with self._lock:
            self._tokens = min(self._config.capacity, self._tokens + self._config.refill_rate)
            self._check_invariant_locked()
            return self._tokens

    def _check_invariant_locked(self) -> None:
        if not 0 <= self._tokens <= self._config.capacity:
            raise InternalInconsistencyError(self._tokens, self._config.capacity)
