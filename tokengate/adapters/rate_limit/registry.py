"""Keyed registry of token buckets.

Notes:
- One bucket per key, created on first access and refilled in the background.
- Lookups of existing keys are lock-free; the registry lock only covers
  bucket creation, refill scheduling, eviction and shutdown.
- Per-process only: multiple workers each enforce their own limits.
- Without ``idle_ttl_seconds`` keys are never evicted, so memory grows with
  the number of distinct keys seen.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from tokengate.adapters.rate_limit.base import (
    REASON_INVALID_KEY,
    REASON_REFILL_UNAVAILABLE,
    REASON_REGISTRY_CLOSED,
    REASON_UNKNOWN_KEY,
    AbstractRateLimiter,
    Admission,
    hash_limiter_key,
)
from tokengate.adapters.rate_limit.scheduler import PeriodicTask, RefillScheduler
from tokengate.adapters.rate_limit.token_bucket import BucketConfig, TokenBucket
from tokengate.core.errors import InvalidConfigurationError
from tokengate.core.result import Failure, Result, failure, success

logger = logging.getLogger(__name__)

# Process-wide, so registries sharing a scheduler never reuse a task key.
_task_ids = itertools.count(1)


@dataclass
class _Entry:
    bucket: TokenBucket
    key_hash: str
    task_key: str
    last_access: float


class KeyedLimiterRegistry(AbstractRateLimiter):
    """Rate limiter holding one ``TokenBucket`` per client key.

    Key lifecycle: UNSEEN -> ACTIVE (bucket exists, refill scheduled) ->
    EVICTED -> UNSEEN. A key seen again after eviction starts with a full
    bucket.
    """

    def __init__(
        self,
        *,
        capacity: int,
        refill_rate: int,
        refill_interval_ms: int,
        idle_ttl_seconds: float | None = None,
        eviction_interval_seconds: float | None = 60.0,
        auto_refill: bool = True,
        scheduler: RefillScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            capacity: Maximum tokens per bucket.
            refill_rate: Tokens added per refill interval.
            refill_interval_ms: Milliseconds between background refills.
            idle_ttl_seconds: Evict keys idle longer than this. None disables
                eviction.
            eviction_interval_seconds: How often the idle sweeper runs. None
                disables the sweeper; ``evict_idle()`` can still be called.
            auto_refill: Schedule refill as soon as a bucket is created.
                When False the host calls ``start_refill`` per key.
            scheduler: Refill scheduler to use, possibly shared with other
                registries. A private one is created by default and shut down
                with the registry; a passed-in one is never shut down here.
            clock: Monotonic time source used for idle tracking.

        Raises:
            InvalidConfigurationError: If any bucket parameter or the idle TTL
                is not positive.
        """
        self._config = BucketConfig(
            capacity=capacity,
            refill_rate=refill_rate,
            refill_interval_ms=refill_interval_ms,
        )
        if idle_ttl_seconds is not None and idle_ttl_seconds <= 0:
            raise InvalidConfigurationError("idle_ttl_seconds", idle_ttl_seconds)
        if eviction_interval_seconds is not None and eviction_interval_seconds <= 0:
            raise InvalidConfigurationError("eviction_interval_seconds", eviction_interval_seconds)

        self._idle_ttl = idle_ttl_seconds
        self._auto_refill = auto_refill
        self._clock = clock
        # An empty scheduler is falsy (it defines __len__), so test for None.
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler if scheduler is not None else RefillScheduler()
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._closed = False

        self._sweeper: PeriodicTask | None = None
        if idle_ttl_seconds is not None and eviction_interval_seconds is not None:
            self._sweeper = PeriodicTask(
                "limiter-evict-idle",
                self.evict_idle,
                eviction_interval_seconds,
            )
            self._sweeper.start()

    def __enter__(self) -> "KeyedLimiterRegistry":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def config(self) -> BucketConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def scheduler(self) -> RefillScheduler:
        return self._scheduler

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def refill_task(self, key: str) -> PeriodicTask | None:
        """Return the background refill task for ``key``, if one is running."""

        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._scheduler.get_task(entry.task_key)

    def is_refill_scheduled(self, key: str) -> bool:
        return self.refill_task(key) is not None

    def try_take(self, key: str) -> Result[bool]:
        """Take one token from ``key``'s bucket, creating it on first use.

        Returns:
            ``Success(True)`` when admitted, ``Success(False)`` when the
            bucket is empty, ``Failure("invalid_key")`` for an empty key,
            ``Failure("registry_closed")`` after shutdown and
            ``Failure("refill_unavailable")`` when a new key's refill task
            could not be started.
        """

        return self.admit(key).map(lambda admission: admission.granted)

    def admit(self, key: str) -> Result[Admission]:
        """Take one token and report the count left after the take.

        Failures are the same as for ``try_take``.
        """

        if self._closed:
            return failure(REASON_REGISTRY_CLOSED)
        if not key:
            return failure(REASON_INVALID_KEY)

        entry = self._entries.get(key)
        if entry is None:
            resolved = self._resolve(key)
            if isinstance(resolved, Failure):
                return resolved
            entry = resolved.value

        entry.last_access = self._clock()
        return entry.bucket.admit()

    def start_refill(self, key: str) -> Result[bool]:
        """Ensure a background refill task runs for ``key``'s bucket.

        Returns:
            ``Success(True)`` if a task was started now, ``Success(False)`` if
            one was already running, or a Failure for an empty key, a closed
            registry or a task that could not be started. A bucket created by
            a call that then fails is discarded.
        """

        if not key:
            return failure(REASON_INVALID_KEY)

        with self._lock:
            if self._closed:
                return failure(REASON_REGISTRY_CLOSED)
            entry, created = self._get_or_create_locked(key)
            return self._schedule_locked(key, entry, discard_on_error=created)

    def get_bucket(self, key: str) -> TokenBucket:
        """Return the bucket for ``key``, creating it if needed.

        Raises:
            ValueError: If key is empty.
            RuntimeError: If the registry has been shut down or the refill
                task for a new key could not be started.
        """

        if not key:
            raise ValueError("key must be a non-empty string")

        entry = self._entries.get(key)
        if entry is not None:
            return entry.bucket

        resolved = self._resolve(key)
        if isinstance(resolved, Failure):
            raise RuntimeError(f"cannot create bucket: {resolved.reason}")
        return resolved.value.bucket

    def available_tokens(self, key: str) -> Result[int]:
        """Report the token count for ``key`` without creating a bucket."""

        entry = self._entries.get(key)
        if entry is None:
            return failure(REASON_UNKNOWN_KEY)
        return success(entry.bucket.available_tokens)

    def evict(self, key: str) -> bool:
        """Remove ``key`` and cancel its refill task.

        Returns:
            True if the key was present.
        """

        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            task = self._scheduler.detach(entry.task_key)

        # Join outside the lock; a refill in flight must not stall other keys.
        if task is not None:
            task.join(self._scheduler.join_timeout_seconds)

        logger.info("limiter.evicted", extra={"key_hash": entry.key_hash})
        return True

    def evict_idle(self) -> int:
        """Remove every key idle for longer than ``idle_ttl_seconds``.

        Returns:
            Number of keys evicted (always 0 when no TTL is configured).
        """

        if self._idle_ttl is None:
            return 0

        now = self._clock()
        with self._lock:
            if self._closed:
                return 0
            idle_keys = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_access > self._idle_ttl
            ]
            tasks = []
            for key in idle_keys:
                entry = self._entries.pop(key)
                task = self._scheduler.detach(entry.task_key)
                if task is not None:
                    tasks.append(task)
            remaining = len(self._entries)

        for task in tasks:
            task.join(self._scheduler.join_timeout_seconds)

        if idle_keys:
            logger.info(
                "limiter.evicted_idle",
                extra={
                    "evicted": len(idle_keys),
                    "remaining": remaining,
                    "idle_ttl_s": self._idle_ttl,
                },
            )
        return len(idle_keys)

    def shutdown(self) -> None:
        """Cancel all background tasks and drop every bucket. Idempotent."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            sweeper, self._sweeper = self._sweeper, None

        # The sweeper takes the registry lock, so join it outside the lock.
        if sweeper is not None:
            sweeper.cancel()

        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()

        if self._owns_scheduler:
            self._scheduler.shutdown()
        else:
            for entry in entries:
                self._scheduler.cancel(entry.task_key)

        logger.info("limiter.shutdown", extra={"keys_dropped": len(entries)})

    def _resolve(self, key: str) -> Result[_Entry]:
        """Create (or fetch) the entry for ``key`` under the registry lock."""

        with self._lock:
            if self._closed:
                return failure(REASON_REGISTRY_CLOSED)
            entry, created = self._get_or_create_locked(key)
            if self._auto_refill:
                scheduled = self._schedule_locked(key, entry, discard_on_error=created)
                if isinstance(scheduled, Failure):
                    return scheduled
            return success(entry)

    def _get_or_create_locked(self, key: str) -> tuple[_Entry, bool]:
        entry = self._entries.get(key)
        if entry is not None:
            return entry, False

        key_hash = hash_limiter_key(key)
        entry = _Entry(
            bucket=TokenBucket(self._config),
            key_hash=key_hash,
            task_key=f"{key_hash}#{next(_task_ids)}",
            last_access=self._clock(),
        )
        self._entries[key] = entry
        logger.debug(
            "limiter.bucket_created",
            extra={
                "key_hash": entry.key_hash,
                "capacity": self._config.capacity,
                "keys": len(self._entries),
            },
        )
        return entry, True

    def _schedule_locked(self, key: str, entry: _Entry, *, discard_on_error: bool) -> Result[bool]:
        try:
            started = self._scheduler.schedule(
                entry.task_key,
                entry.bucket.refill,
                self._config.refill_interval_seconds,
                key_hash=entry.key_hash,
            )
        except RuntimeError:
            # A bucket without a refill task would stay empty forever once
            # drained, so a new one is dropped and the next call retries.
            if discard_on_error:
                del self._entries[key]
            logger.exception(
                "limiter.refill_start_failed",
                extra={"key_hash": entry.key_hash, "bucket_discarded": discard_on_error},
            )
            return failure(REASON_REFILL_UNAVAILABLE)
        return success(started)
