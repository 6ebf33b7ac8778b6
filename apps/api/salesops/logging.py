from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from salesops.context import get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())

# Structured fields emitted by the request logger and the quotation/payment services.
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "actor_id",
        "company_id",
        "quotation_id",
        "payment_id",
        "action",
        "from_status",
        "to_status",
        "payment_status",
        "amount",
        "kind",
        "error",
    }
)
MAX_ERROR_LENGTH = 500


class RequestContextFilter(logging.Filter):
    """Stamp every record with the request correlation id and active trace ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in LOG_FIELDS and key not in _BASE_RECORD_KEYS
    }
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id
            payload["span_id"] = getattr(record, "span_id", None)

        fields = _structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line human readable output for local runs (``LOG_FORMAT=text``)."""

    def format(self, record: logging.LogRecord) -> str:
        fields = " ".join(f"{key}={value}" for key, value in sorted(_structured_fields(record).items()))
        line = f"{record.levelname:<7} {record.name} {record.getMessage()} correlation_id={getattr(record, 'correlation_id', None)}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_salesops_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter: logging.Formatter = (
        TextLogFormatter() if os.getenv("LOG_FORMAT", "json").lower() == "text" else JsonLogFormatter()
    )

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._salesops_configured = True  # type: ignore[attr-defined]
