"""Process-wide logging setup.

Records are written one per line, either as JSON (default, for log shippers) or as plain
text (``LOG_FORMAT=text``, handy for the import CLI in a terminal). Every record carries the
correlation id of the request or job that produced it; extras passed through ``extra=`` are
kept only when whitelisted below.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

from salesforce_pro.context import get_correlation_id
from salesforce_pro.core.config import get_settings

MAX_FIELD_LENGTH = 500

LOGGED_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # actors and records
        "user_id",
        "email",
        "client_id",
        "opportunity_id",
        "event_type",
        # import batches
        "row_number",
        "total_rows",
        "imported",
        "updated",
        "ignored",
        "error_count",
        "batch",
        "mode",
        "total",
        "new",
        "duplicates",
        "errors",
        "status",
        "error",
    }
)

_previous_factory = logging.getLogRecordFactory()


def _stamped_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _previous_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in LOGGED_FIELDS:
        if key not in record.__dict__:
            continue
        value = record.__dict__[key]
        if isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            value = value[:MAX_FIELD_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = record_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str, ensure_ascii=False)


class TextLogFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(f"{key}={value}" for key, value in sorted(record_fields(record).items()))
        return f"{line} {fields}" if fields else line


def configure_logging(*, stream: IO[str] | None = None, log_format: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_salesforce_pro_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    chosen_format = (log_format or settings.log_format).lower()

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if chosen_format == "text" else JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_stamped_record)
    root_logger.addHandler(handler)
    root_logger._salesforce_pro_configured = True  # type: ignore[attr-defined]
