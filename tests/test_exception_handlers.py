"""Tests for global exception handlers.

Validates that domain errors map to consistent HTTP status codes and error
format, and that unexpected errors do not leak details.
"""

import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tokengate.core.errors import (
    AppError,
    InternalInconsistencyError,
    InvalidConfigurationError,
    ValidationAppError,
)
from tokengate.core.exception_handlers import setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_invalid_configuration_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/bad-config")
        async def endpoint():
            raise InvalidConfigurationError("capacity", 0)

        response = client.get("/bad-config")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_configuration"
        assert error["details"] == {"field": "capacity", "actual_value": 0}
        assert "request_id" in error

    def test_validation_error_without_details(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/validation")
        async def endpoint():
            raise ValidationAppError(code="bad_key", message="Key must not be empty")

        response = client.get("/validation")

        assert response.status_code == 400
        assert "details" not in response.json()["error"]

    def test_internal_inconsistency_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/inconsistent")
        async def endpoint():
            raise InternalInconsistencyError(available_tokens=7, capacity=5)

        response = client.get("/inconsistent")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "internal_inconsistency"
        assert error["details"]["capacity"] == 5

    def test_internal_inconsistency_logs_bucket_state(
        self, client: TestClient, app_with_handlers: FastAPI, caplog
    ):
        @app_with_handlers.get("/inconsistent-logged")
        async def endpoint():
            raise InternalInconsistencyError(available_tokens=-1, capacity=5)

        with caplog.at_level(logging.ERROR, logger="tokengate.core.exception_handlers"):
            client.get("/inconsistent-logged")

        record = next(r for r in caplog.records if r.getMessage() == "limiter.invariant_violated")
        assert record.available_tokens == -1
        assert record.capacity == 5
        assert record.path == "/inconsistent-logged"

    def test_plain_app_error_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/app-error")
        async def endpoint():
            raise AppError(code="boom", message="Something broke")

        assert client.get("/app-error").status_code == 500


class TestGeneralExceptionHandler:
    def test_unexpected_error_is_generic(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/unexpected")
        async def endpoint():
            raise KeyError("secret internal detail")

        response = client.get("/unexpected")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "internal_server_error"
        assert "secret internal detail" not in response.text


def test_app_error_str_is_message() -> None:
    err = InvalidConfigurationError("refill_rate", -2)

    assert str(err) == "refill_rate must be positive (got -2)"
    assert isinstance(err, ValidationAppError)
