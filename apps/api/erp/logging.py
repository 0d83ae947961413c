from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from erp.context import get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}

_HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
_CRM_FIELDS = frozenset(
    {
        "deal_id",
        "stage_id",
        "pipeline_id",
        "from_stage_id",
        "to_stage_id",
        "position",
        "status",
        "invoice_id",
        "operation",
        "event_name",
    }
)
LOGGED_FIELDS = _HTTP_FIELDS | _CRM_FIELDS | {"error"}

MAX_ERROR_LENGTH = 500


def _plain(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: _plain(value)
        for key, value in record.__dict__.items()
        if key in LOGGED_FIELDS and key not in _BASE_RECORD_KEYS
    }
    error = fields.get("error")
    if isinstance(error, str) and len(error) > MAX_ERROR_LENGTH:
        fields["error"] = error[:MAX_ERROR_LENGTH]
    return fields


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_with_correlation(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: fixed envelope keys plus whitelisted ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_erp_configured", False):
        return

    level = logging.getLevelName((level_name or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_with_correlation)
    root_logger._erp_configured = True  # type: ignore[attr-defined]
