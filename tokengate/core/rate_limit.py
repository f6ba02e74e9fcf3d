"""Rate limiting dependency for FastAPI routes.

This module wires the keyed token bucket registry into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Swap-friendly: routes see ``AbstractRateLimiter``, not the registry.
- Process-wide state: one registry per process, shut down with the app.

Keying:
- Per API key (X-API-Key header).
- If the API key is missing, fall back to client IP.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from tokengate.adapters.rate_limit.base import AbstractRateLimiter, Admission, hash_limiter_key
from tokengate.adapters.rate_limit.registry import KeyedLimiterRegistry
from tokengate.core.config import LimiterSettings, settings
from tokengate.core.result import Failure

logger = logging.getLogger(__name__)


_limiter: AbstractRateLimiter | None = None
_limiter_config: tuple | None = None
_limiter_lock = threading.Lock()


def _config_fingerprint(cfg: LimiterSettings) -> tuple:
    return (
        cfg.capacity,
        cfg.refill_rate,
        cfg.refill_interval_ms,
        cfg.idle_ttl_seconds,
        cfg.eviction_interval_seconds,
    )


def build_rate_limiter(cfg: LimiterSettings) -> KeyedLimiterRegistry:
    """Create a registry from limiter settings."""

    return KeyedLimiterRegistry(
        capacity=cfg.capacity,
        refill_rate=cfg.refill_rate,
        refill_interval_ms=cfg.refill_interval_ms,
        idle_ttl_seconds=cfg.idle_ttl_seconds,
        eviction_interval_seconds=cfg.eviction_interval_seconds,
    )


def get_rate_limiter() -> AbstractRateLimiter:
    """Return the process-wide rate limiter instance.

    The instance is cached in-module to preserve bucket state across
    requests. If limiter settings change (primarily in tests), the old
    registry is shut down and a new one is built.

    Returns:
        AbstractRateLimiter: Configured limiter instance.
    """

    global _limiter, _limiter_config

    config = _config_fingerprint(settings.limiter)

    with _limiter_lock:
        if _limiter is None or _limiter_config != config:
            previous = _limiter
            _limiter = build_rate_limiter(settings.limiter)
            _limiter_config = config
            if previous is not None:
                previous.shutdown()
            logger.info(
                "rate_limit.limiter_built",
                extra={
                    "capacity": settings.limiter.capacity,
                    "refill_rate": settings.limiter.refill_rate,
                    "refill_interval_ms": settings.limiter.refill_interval_ms,
                },
            )

        return _limiter


def shutdown_rate_limiter() -> None:
    """Shut down the process-wide limiter, cancelling its refill tasks."""

    global _limiter, _limiter_config

    with _limiter_lock:
        limiter, _limiter, _limiter_config = _limiter, None, None

    if limiter is not None:
        limiter.shutdown()


def _build_rate_limit_key(request: Request, x_api_key: str | None) -> str:
    """Build the limiter key for the current request."""

    if x_api_key:
        return f"api_key:{x_api_key}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


def _retry_after_seconds() -> int:
    # An empty bucket regains tokens at the next refill tick.
    return max(1, math.ceil(settings.limiter.refill_interval_ms / 1000))



async def enforce_rate_limit(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> Admission | None:
    """FastAPI dependency enforcing rate limits.

    When enabled, takes one token from the requester's bucket. An exhausted
    bucket yields HTTP 429; a limiter that cannot evaluate the request (e.g.
    already shut down) yields HTTP 503.

    Args:
        request: FastAPI request.
        x_api_key: API key from X-API-Key header.

    Returns:
        The admission for this request (remaining count taken in the same
        step as the token), or None when limiting is disabled.

    Raises:
        HTTPException: 429 Too Many Requests or 503 Service Unavailable.
    """

    if not settings.app.rate_limit_enabled:
        return None

    limiter = get_rate_limiter()
    key = _build_rate_limit_key(request, x_api_key)
    key_hash = hash_limiter_key(key)
    key_type = "api_key" if x_api_key else "ip"

    result = limiter.admit(key)
    if isinstance(result, Failure):
        logger.error(
            "rate_limit.unavailable",
            extra={"key_type": key_type, "key_hash": key_hash, "reason": result.reason},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiter unavailable. Try again later.",
        )

    admission = result.value
    if admission.granted:
        logger.debug(
            "rate_limit.allowed",
            extra={"key_type": key_type, "key_hash": key_hash, "remaining": admission.remaining},
        )
        return admission

    retry_after = _retry_after_seconds()
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_type": key_type,
            "key_hash": key_hash,
            "limit": admission.limit,
            "retry_after_s": retry_after,
        },
    )

    headers: dict[str, str] = {}
    if settings.app.rate_limit_include_headers:
        headers["Retry-After"] = str(retry_after)
        headers["X-RateLimit-Limit"] = str(admission.limit)
        headers["X-RateLimit-Remaining"] = str(admission.remaining)

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )
