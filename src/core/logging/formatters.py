"""Log formatters: one JSON object per line for files, colored text for terminals."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer

# user:password@ in DSNs and URLs
_URL_CREDENTIALS = re.compile(r"(://[^:/@]+):[^@]*@")
_URL_SECRET_PARAMS = re.compile(r"([?&])(token|key|secret|password|auth)=[^&]*", re.IGNORECASE)


def mask_url(url: str) -> str:
    """Hide the password and secret query parameters of a URL."""
    url = _URL_CREDENTIALS.sub(r"\1:***@", url)
    return _URL_SECRET_PARAMS.sub(r"\1\2=[REDACTED]", url)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with log context and typed ``extra=`` fields.

    Only the extras listed in FIELDS are emitted. Fields with a type are
    coerced to it (None when coercion fails), so a numeric column never
    holds a string. URL fields have their credentials masked.
    """

    FIELDS: dict[str, type | None] = {
        # timing and throughput
        "duration_ms": float,
        "records_per_second": float,
        "delay_seconds": float,
        # batching
        "batch_size": int,
        "rows_inserted": int,
        "outstanding_batches": int,
        "max_batch_records": int,
        "max_batch_seconds": float,
        # retries and errors
        "attempt": int,
        "max_attempts": int,
        "error_category": None,
        "error_message": None,
        "error_type": None,
        "error": None,
        "operation": None,
        # event stream
        "sources": None,
        "offsets": None,
        "source_count": int,
        "store_source_count": int,
        "subscriptions": None,
        "events_received": int,
        "events_filtered": int,
        "from_start": None,
        # lifecycle and endpoints
        "state": None,
        "previous_state": None,
        "http_status": int,
        "http_url": None,
        "database_url": None,
        "port": int,
        "actual_port": int,
        "preferred_port": int,
    }

    URL_FIELDS = frozenset({"database_url", "http_url"})
    CONTEXT_FIELDS = ("stage", "worker_id", "table")

    # Levels where the call site is worth the extra bytes
    LOCATION_LEVELS = frozenset({logging.DEBUG, logging.ERROR, logging.CRITICAL})

    def _field_value(self, field: str, value: Any) -> Any:
        expected = self.FIELDS[field]
        if expected is not None:
            try:
                value = expected(value)
            except (TypeError, ValueError):
                return None
        if field in self.URL_FIELDS and isinstance(value, str):
            return mask_url(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_log_context()
        entry.update({key: context[key] for key in self.CONTEXT_FIELDS if context.get(key)})

        if record.levelno in self.LOCATION_LEVELS:
            entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = self._field_value(field, value)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stacktrace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    ``2026-01-05 14:30:00 - INFO - [relay] - [events] - [batch:3] message``

    Level names are colored only when stdout is a terminal.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        color = self.LEVEL_COLORS.get(record.levelno)
        if self._use_colors and color:
            level = f"{color}{level}{self.RESET}"

        context = get_log_context()
        parts = [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), level]
        parts += [f"[{context[key]}]" for key in ("stage", "table") if context.get(key)]

        tags = []
        batch_size = getattr(record, "batch_size", None)
        if batch_size is not None:
            tags.append(f"[batch:{batch_size}]")
        state = getattr(record, "state", None)
        if state:
            tags.append(f"[{state}]")
        parts.append(" ".join([*tags, record.getMessage()]))

        line = " - ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
