"""Background refill scheduling.

Each key gets its own ``PeriodicTask``: a daemon thread that waits on a stop
event for one interval, runs its action, and repeats. Waiting on the event
(rather than ``time.sleep``) lets ``cancel()`` wake the thread immediately.

Choice: one task per key instead of a global sweep. Keys with different
intervals stay independent, and a slow or failing refill only affects its
own key.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_JOIN_TIMEOUT_SECONDS = 5.0


class PeriodicTask:
    """Run ``action`` every ``interval_seconds`` on a daemon thread.

    Exceptions raised by ``action`` are logged and the task keeps running.
    After ``cancel()`` returns, ``action`` is not invoked again.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], object],
        interval_seconds: float,
        *,
        log_context: dict[str, object] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        self._name = name
        self._action = action
        self._interval = interval_seconds
        self._log_context = dict(log_context or {})
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._runs = 0
        self._failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def failures(self) -> int:
        return self._failures

    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Signal the task to stop without waiting for it."""

        self._stop.set()

    def join(self, timeout: float | None = DEFAULT_JOIN_TIMEOUT_SECONDS) -> None:
        """Wait for an in-flight run to finish. Call ``stop()`` first."""

        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(
                    "periodic_task.join_timeout",
                    extra={"task": self._name, "timeout_s": timeout, **self._log_context},
                )

    def cancel(self, timeout: float | None = DEFAULT_JOIN_TIMEOUT_SECONDS) -> None:
        """Stop the task and wait for an in-flight run to finish."""

        self.stop()
        self.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._action()
                self._runs += 1
            except Exception:
                self._failures += 1
                logger.exception(
                    "periodic_task.failed",
                    extra={
                        "task": self._name,
                        "failures": self._failures,
                        **self._log_context,
                    },
                )


class RefillScheduler:
    """Owns one refill ``PeriodicTask`` per task key.

    ``schedule`` is idempotent: a key that already has a live task keeps it.
    A scheduler can be shared by several registries, so callers pick task
    keys that cannot collide (see ``KeyedLimiterRegistry``).
    """

    def __init__(self, *, join_timeout_seconds: float = DEFAULT_JOIN_TIMEOUT_SECONDS) -> None:
        self._tasks: dict[str, PeriodicTask] = {}
        self._lock = threading.Lock()
        self._join_timeout = join_timeout_seconds
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def join_timeout_seconds(self) -> float:
        return self._join_timeout

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(
        self,
        key: str,
        action: Callable[[], object],
        interval_seconds: float,
        *,
        key_hash: str | None = None,
    ) -> bool:
        """Start a periodic ``action`` for ``key`` unless one already exists.

        The task is registered only once its thread has started, so a failed
        start leaves no entry behind and the call can be retried.

        Args:
            key: Task key, unique per scheduled action.
            action: Zero-argument callable, usually ``bucket.refill``.
            interval_seconds: Delay between runs.
            key_hash: Log-safe key identifier.

        Returns:
            True if a new task was started, False if one was already running.

        Raises:
            RuntimeError: If the scheduler has been shut down, or the thread
                could not be started.
        """

        with self._lock:
            if self._closed:
                raise RuntimeError("scheduler is shut down")
            if key in self._tasks:
                return False

            task = PeriodicTask(
                f"refill-{key_hash or 'key'}",
                action,
                interval_seconds,
                log_context={"key_hash": key_hash},
            )
            task.start()
            self._tasks[key] = task

        logger.debug(
            "refill.scheduled",
            extra={"key_hash": key_hash, "interval_s": interval_seconds},
        )
        return True

    def detach(self, key: str) -> PeriodicTask | None:
        """Unregister the task for ``key`` and signal it to stop.

        Does not wait for the thread. Callers that hold their own lock use
        this and ``join`` the returned task after releasing it.
        """

        with self._lock:
            task = self._tasks.pop(key, None)
        if task is not None:
            task.stop()
        return task

    def cancel(self, key: str) -> bool:
        """Cancel the task for ``key``. Returns False if none was scheduled."""

        task = self.detach(key)
        if task is None:
            return False

        task.join(self._join_timeout)
        logger.debug("refill.cancelled", extra={"task": task.name})
        return True

    def is_scheduled(self, key: str) -> bool:
        return key in self._tasks

    def get_task(self, key: str) -> PeriodicTask | None:
        return self._tasks.get(key)

    def scheduled_keys(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def shutdown(self) -> None:
        """Cancel every task. Further ``schedule`` calls raise."""

        with self._lock:
            self._closed = True
            tasks = list(self._tasks.values())
            self._tasks.clear()

        for task in tasks:
            task.cancel(self._join_timeout)

        if tasks:
            logger.info("refill.scheduler_stopped", extra={"cancelled": len(tasks)})
