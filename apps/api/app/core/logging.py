from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

from app.core.settings import get_settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RESERVED_KEYS = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
_SENSITIVE_KEY_FRAGMENTS = (
    "secret",
    "token",
    "password",
    "apikey",
    "api_key",
    "signature",
    "authorization",
)
# Identifier fields that contain a sensitive fragment but are safe to log.
_SAFE_KEYS = {"event_id", "session_id", "customer_id", "subscription_id"}


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str | None:
    return _request_id_var.get()


def _json_safe_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, dict):
        return {str(k): _json_safe_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [_json_safe_value(item) for item in value]
    return str(value)


def _is_sensitive_key(key: str) -> bool:
    if key in _SAFE_KEYS:
        return False
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "msg": record.getMessage(),
            "component": getattr(record, "component", record.name),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_KEYS or key.startswith("_"):
                continue
            if key in {"component", "request_id"}:
                continue
            if _is_sensitive_key(key):
                payload[key] = "[redacted]"
                continue
            payload[key] = _json_safe_value(value)

        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            payload["error"] = str(record.exc_info[1])[:500] if record.exc_info[1] else "unknown"

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def _has_json_handler(logger: logging.Logger) -> bool:
    return any(isinstance(handler.formatter, JsonLogFormatter) for handler in logger.handlers)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    level_name = (level_name or get_settings().LOG_LEVEL).strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)

    if not _has_json_handler(root_logger):
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(JsonLogFormatter())
        root_logger.handlers.clear()
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
