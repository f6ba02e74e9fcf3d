"""Tests for limiter log context: key hashing, request correlation, JSON output."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from tokengate.adapters.rate_limit.base import hash_limiter_key
from tokengate.core.logging import (
    JsonFormatter,
    LimiterContextFilter,
    clear_request_id,
    set_request_id,
)


@pytest.fixture
def capture():
    logger = logging.getLogger("test_tokengate_logging")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(LimiterContextFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    yield logger, stream

    logger.handlers.clear()
    clear_request_id()


def test_raw_limiter_key_is_replaced_by_its_hash(capture):
    logger, stream = capture

    logger.warning("rate_limit.exceeded", extra={"limiter_key": "api_key:sk-secret-123"})

    output = stream.getvalue()
    assert "sk-secret-123" not in output
    payload = json.loads(output)
    assert payload["key_hash"] == hash_limiter_key("api_key:sk-secret-123")
    assert "limiter_key" not in payload


def test_existing_key_hash_wins_and_client_ip_is_dropped(capture):
    logger, stream = capture

    logger.info("limiter.evicted", extra={"key_hash": "abc123", "client_ip": "10.0.0.7"})

    output = stream.getvalue()
    assert "10.0.0.7" not in output
    assert json.loads(output)["key_hash"] == "abc123"


def test_event_and_extras_emitted_as_json(capture):
    logger, stream = capture

    logger.info("limiter.evicted_idle", extra={"evicted": 3, "remaining": 7})

    payload = json.loads(stream.getvalue())
    assert payload["event"] == "limiter.evicted_idle"
    assert payload["level"] == "info"
    assert payload["evicted"] == 3
    assert payload["remaining"] == 7
    assert "request_id" not in payload


def test_request_id_attached_from_context(capture):
    logger, stream = capture
    set_request_id("req-42")

    logger.info("rate_limit.allowed")

    assert json.loads(stream.getvalue())["request_id"] == "req-42"


def test_refill_failure_is_one_line_with_error_object(capture):
    logger, stream = capture

    try:
        raise RuntimeError("refill bug")
    except RuntimeError:
        logger.exception("periodic_task.failed", extra={"task": "refill-abc", "failures": 2})

    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["task"] == "refill-abc"
    assert payload["error"]["type"] == "RuntimeError"
    assert payload["error"]["message"] == "refill bug"
    assert "Traceback" in payload["error"]["traceback"]
