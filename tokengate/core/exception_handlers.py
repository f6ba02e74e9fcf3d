"""Map limiter errors to JSON error responses.

Every error body has the shape
``{"error": {"code", "message", "request_id", "details"?}}``.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tokengate.core.errors import AppError, InternalInconsistencyError, ValidationAppError
from tokengate.core.logging import get_request_id

logger = logging.getLogger(__name__)

# First match wins; anything else is a 500.
_STATUS_BY_ERROR: tuple[tuple[type[AppError], int], ...] = (
    (ValidationAppError, 400),
    (InternalInconsistencyError, 500),
)


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = {"code": code, "message": message, "request_id": get_request_id()}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        500,
    )

    if isinstance(exc, InternalInconsistencyError):
        # A bucket left its [0, capacity] range; this is a bug, not bad input.
        logger.error("limiter.invariant_violated", extra={"path": request.url.path, **exc.details})
    else:
        log = logger.warning if status_code < 500 else logger.error
        log(
            "app_error_handled",
            extra={"error_code": exc.code, "status_code": status_code, "path": request.url.path},
        )

    return _error_response(status_code, exc.code, exc.message, exc.details)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the type, return a generic 500 without internals."""

    logger.error(
        "unhandled_exception",
        extra={"error_type": type(exc).__name__, "path": request.url.path, "method": request.method},
    )
    return _error_response(
        500,
        "internal_server_error",
        "An unexpected error occurred. Please try again later.",
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
