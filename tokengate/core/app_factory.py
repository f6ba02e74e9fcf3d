"""Application factory for the FastAPI host.

Centralizes app construction (metadata, middleware, handlers, routers,
limiter lifecycle) so tests can build isolated instances.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from tokengate.api.routes import health_router, limits_router
from tokengate.core.config import settings
from tokengate.core.exception_handlers import setup_exception_handlers
from tokengate.core.logging import configure_logging
from tokengate.core.middleware import request_id_middleware
from tokengate.core.rate_limit import get_rate_limiter, shutdown_rate_limiter


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Build the registry eagerly so bad limiter settings fail at startup.
    get_rate_limiter()
    try:
        yield
    finally:
        shutdown_rate_limiter()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="tokengate",
        description=(
            "Keyed token bucket rate limiter. Each X-API-Key (or client IP) "
            "gets its own bucket, refilled in the background."
        ),
        version="0.1.0",
        debug=settings.app.debug,
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(limits_router, prefix="/v1")
    app.include_router(health_router)

    return app
