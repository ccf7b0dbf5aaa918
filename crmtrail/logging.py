from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from crmtrail.context import get_actor_id, get_client_info, get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)
AUDIT_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "entity_kind",
    "entity_id",
    "action",
    "changed_fields",
    "event_type",
    "count",
    "error",
)
_MAX_ERROR_CHARS = 500


def _stamp(record: logging.LogRecord) -> logging.LogRecord:
    """Attach request-scoped identifiers unless the caller passed them explicitly."""
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if getattr(record, "actor_id", None) is None:
        record.actor_id = get_actor_id()
    if getattr(record, "client_ip", None) is None:
        record.client_ip = get_client_info()[0]
    return record


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp(record)
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp(_default_record_factory(*args, **kwargs))


def _audit_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        name: record.__dict__[name]
        for name in AUDIT_FIELDS
        if name in record.__dict__ and name not in _BASE_RECORD_KEYS
    }
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_CHARS]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _audit_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "actor_id": getattr(record, "actor_id", None),
            "client_ip": getattr(record, "client_ip", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line format for local runs (``LOG_FORMAT=text``)."""

    def format(self, record: logging.LogRecord) -> str:
        fields = " ".join(f"{key}={value}" for key, value in _audit_fields(record).items())
        line = (
            f"{record.levelname:<7} {record.name} [{getattr(record, 'correlation_id', None) or '-'}] "
            f"{record.getMessage()} {fields}"
        ).rstrip()
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crmtrail_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter = TextLogFormatter() if os.getenv("LOG_FORMAT", "json").lower() == "text" else JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crmtrail_configured = True  # type: ignore[attr-defined]
