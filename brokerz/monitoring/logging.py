"""
Structured logging for broker drivers.

BrokerJsonFormatter renders each record as one JSON object. While a driver
runs a handler it sets ``broker_context`` (driver, topic, message id,
group), so every log line emitted from inside the handler carries that
context without the handler knowing about it.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

broker_context: ContextVar[dict[str, Any]] = ContextVar("broker_context", default={})


class BrokerJsonFormatter(logging.Formatter):
    """JSON formatter carrying broker context fields."""

    _EXTRA_FIELDS = (
        "driver",
        "topic",
        "queue",
        "group",
        "message_id",
        "job_id",
        "retry_count",
        "error_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self._build_base_entry(record)
        self._add_broker_context(log_entry)
        self._add_record_extras(log_entry, record)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)

    def _build_base_entry(self, record: logging.LogRecord) -> dict[str, Any]:
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

    def _add_broker_context(self, log_entry: dict[str, Any]) -> None:
        for key, value in broker_context.get({}).items():
            if value is not None:
                log_entry[key] = value

    def _add_record_extras(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self._EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)


@contextmanager
def handler_context(**fields: Any) -> Iterator[None]:
    """Set broker_context for the duration of a handler call."""
    token = broker_context.set({**broker_context.get({}), **fields})
    try:
        yield
    finally:
        broker_context.reset(token)
