"""Rate-limited inspection endpoint.

``GET /v1/limits/me`` takes one token from the caller's bucket (via the
``enforce_rate_limit`` dependency) and reports what is left.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tokengate.adapters.rate_limit.base import Admission
from tokengate.core.config import settings
from tokengate.core.rate_limit import enforce_rate_limit

router = APIRouter(prefix="/limits", tags=["Limits"])


class LimitStatusResponse(BaseModel):
    """Bucket state for the calling client."""

    limited: bool = Field(..., description="Whether rate limiting is enabled")
    capacity: int = Field(..., description="Maximum tokens per bucket")
    refill_rate: int = Field(..., description="Tokens added per refill interval")
    refill_interval_ms: int = Field(..., description="Milliseconds between refills")
    remaining: int | None = Field(
        None,
        description="Tokens left after this request (None when limiting is disabled)",
    )


@router.get("/me", response_model=LimitStatusResponse)
def my_limit_status(
    admission: Annotated[Admission | None, Depends(enforce_rate_limit)],
) -> LimitStatusResponse:
    """Report the caller's remaining tokens after consuming one."""

    return LimitStatusResponse(
        limited=admission is not None,
        capacity=settings.limiter.capacity,
        refill_rate=settings.limiter.refill_rate,
        refill_interval_ms=settings.limiter.refill_interval_ms,
        remaining=admission.remaining if admission is not None else None,
    )
