"""Log formatters for JSON and console output."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import LOG_CONTEXT_FIELDS, get_log_context
from core.utils.json_serializers import json_serializer

# user:password@ in amqp:// and postgresql:// URLs
_CREDENTIALS = re.compile(r"(://[^:/@]+):[^@]*@")


def redact_url(url: str) -> str:
    """Replace the password in a connection URL with ``[REDACTED]``."""
    return _CREDENTIALS.sub(r"\1:[REDACTED]@", url)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, with the logging context merged in.

    Only the extras listed in EXTRA_FIELDS are emitted. Numeric extras are
    coerced so a stray string never changes a column's type downstream, and
    connection URLs have their credentials redacted.
    """

    EXTRA_FIELDS = (
        # Batch
        "batch_id",
        "duration_ms",
        # Errors
        "error_category",
        "error_message",
        "error",
        "error_type",
        "disposition",
        "reason",
        # Batch and settlement counters
        "records_processed",
        "records_succeeded",
        "records_failed",
        "records_retried",
        "records_dead_lettered",
        "records_requeued",
        "batch_size",
        "retry_count",
        "max_retries",
        "timeout_seconds",
        # Message
        "external_id",
        "routing_key",
        "exchange",
        "queue",
        "delivery_tag",
        "message_state",
        "missing_fields",
        # Configuration
        "worker_name",
        "prefetch_count",
        "intake_concurrency",
        "decode_concurrency",
        "batch_concurrency",
        "broker_url",
        "dsn",
        "port",
    )

    NUMERIC_FIELDS = {
        "duration_ms": float,
        "timeout_seconds": float,
        "retry_count": int,
        "max_retries": int,
        "batch_size": int,
        "records_processed": int,
        "records_succeeded": int,
        "records_failed": int,
        "records_retried": int,
        "records_dead_lettered": int,
        "records_requeued": int,
        "delivery_tag": int,
        "prefetch_count": int,
        "port": int,
    }

    URL_FIELDS = frozenset({"broker_url", "dsn"})

    def _field_value(self, field: str, value: Any) -> Any:
        cast = self.NUMERIC_FIELDS.get(field)
        if cast is not None:
            try:
                return cast(value)
            except (ValueError, TypeError):
                return None
        if field in self.URL_FIELDS and isinstance(value, str):
            return redact_url(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_log_context()
        entry.update({key: context[key] for key in LOG_CONTEXT_FIELDS if context[key]})

        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
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
    Human-readable single-line formatter.

    Level names are colored only when stdout is a TTY.
    """

    COLORS = {
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
        context = get_log_context()

        level = record.levelname
        color = self.COLORS.get(record.levelno) if self._use_colors else None
        if color:
            level = f"{color}{level}{self.RESET}"

        parts = [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), level]
        parts.extend(f"[{context[key]}]" for key in ("domain", "stage") if context.get(key))

        tags = []
        batch_id = getattr(record, "batch_id", None)
        if batch_id:
            tags.append(f"[batch:{batch_id}]")
        external_id = getattr(record, "external_id", None)
        if external_id:
            tags.append(f"[{external_id}]")

        parts.append(" ".join([*tags, record.getMessage()]))
        line = " - ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
