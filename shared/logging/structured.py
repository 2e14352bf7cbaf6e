"""Structured logging utilities for JSON-formatted runtime output."""

from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from typing import Any, Mapping

from shared.redaction import sanitize_log

# Context variable that carries the current trace identifier.
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")

# LogRecord attributes that never belong in the JSON payload.
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


def set_trace_id(value: str | None = None) -> str:
    """Assign a trace identifier for the current context.

    When ``value`` is ``None`` a new UUIDv4 string is generated. The identifier is
    returned so callers can reuse it when emitting log entries or HTTP responses.
    """

    trace = value or str(uuid.uuid4())
    _trace_id_var.set(trace)
    return trace


def get_trace_id() -> str:
    return _trace_id_var.get()


class JsonFormatter(logging.Formatter):
    """Formatter that renders log records as redacted JSON objects.

    Primitive ``extra`` fields are promoted into the payload; secrets in the
    message or those fields are masked before serialisation.
    """

    def __init__(self, static: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._static = dict(static or {})

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - docstring inherited
        extra = {
            key: value
            for key, value in record.__dict__.items()
            if not key.startswith("_")
            and key not in _RESERVED
            and (isinstance(value, (str, int, float, bool)) or value is None)
        }
        message, clean_extra = sanitize_log(record.getMessage(), extra=extra)

        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": message,
            "trace": getattr(record, "trace", "") or get_trace_id(),
        }
        payload.update(self._static)
        for key, value in (clean_extra or {}).items():
            payload.setdefault(key, value)

        if record.exc_info:
            payload["exc"] = str(sanitize_log(self.formatException(record.exc_info))[0])

        return json.dumps(payload, ensure_ascii=False)
