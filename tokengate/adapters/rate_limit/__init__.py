"""Rate limiting adapters.

Per-key token buckets live in a registry that creates them on first use and
refills them from background threads. Admission decisions are reported as
``Result`` values (see ``tokengate.core.result``).
"""

from tokengate.adapters.rate_limit.base import AbstractRateLimiter, Admission
from tokengate.adapters.rate_limit.registry import KeyedLimiterRegistry
from tokengate.adapters.rate_limit.scheduler import PeriodicTask, RefillScheduler
from tokengate.adapters.rate_limit.token_bucket import BucketConfig, TokenBucket

__all__ = [
    "AbstractRateLimiter",
    "Admission",
    "BucketConfig",
    "KeyedLimiterRegistry",
    "PeriodicTask",
    "RefillScheduler",
    "TokenBucket",
]
