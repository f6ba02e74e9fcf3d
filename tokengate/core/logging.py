"""Structured logging for limiter events.

Limiter log lines are events (``limiter.evicted``, ``rate_limit.exceeded``,
``periodic_task.failed``) carrying their context as ``extra`` fields. This
module makes sure that context is safe and correlated:

- Raw client keys never reach a handler. Fields such as ``limiter_key`` or
  ``client_ip`` are replaced by ``key_hash`` (the same hash the registry logs),
  so one client's lines can still be grouped.
- ``request_id`` from the current request is attached to every record.
- The JSON formatter emits ``event`` plus the extras, and folds exception
  info into an ``error`` object so refill failures stay one line each.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from tokengate.adapters.rate_limit.base import hash_limiter_key
from tokengate.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Record fields that carry a raw client identifier.
CLIENT_KEY_FIELDS = ("limiter_key", "client_key", "api_key", "client_ip", "x_api_key")

_STANDARD_ATTRS = frozenset(vars(LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def event_fields(record: LogRecord) -> dict[str, Any]:
    """Return the ``extra`` fields attached to ``record``."""

    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class LimiterContextFilter(logging.Filter):
    """Attach request_id and replace raw client keys with their hash."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()

        for field in CLIENT_KEY_FIELDS:
            raw = record.__dict__.pop(field, None)
            if raw and getattr(record, "key_hash", None) is None:
                record.key_hash = hash_limiter_key(str(raw))
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per event."""

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(
            {key: value for key, value in event_fields(record).items() if value is not None}
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            payload["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(payload, default=str)


def _build_handler(cfg: LogSettings) -> logging.Handler:
    if cfg.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    path = Path(cfg.file_path or "logs/tokengate.log")
    path.parent.mkdir(parents=True, exist_ok=True)
    if cfg.max_bytes:
        return RotatingFileHandler(
            path, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding="utf-8"
        )
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install a single root handler built from ``LOG_*`` settings.

    Args:
        log_settings: Overrides the global settings (mainly for tests).
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(LimiterContextFilter())
    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
