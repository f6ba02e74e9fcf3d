"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets TESTING so settings never load a local .env file, and pins limiter
defaults so HTTP tests see a predictable policy.
"""

import os
import time
from typing import Callable

import pytest

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("LIMITER_CAPACITY", "3")
os.environ.setdefault("LIMITER_REFILL_RATE", "3")
os.environ.setdefault("LIMITER_REFILL_INTERVAL_MS", "60000")
os.environ.setdefault("LOG_FORMAT", "plain")


class FakeClock:
    """Deterministic monotonic clock for idle-eviction tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""

    def _wait(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
