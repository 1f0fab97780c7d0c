"""JSON structured logging for the mastery workers.

Controlled via MASTERY_LOG_FORMAT env var: "json" (default) or "text".
"""

import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

EXTRA_PREFIX = "signal_"


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # signal_* extras (queue, batch id, user id, final tier, ...)
        for key, value in record.__dict__.items():
            if key.startswith(EXTRA_PREFIX):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def batch_log_extra(batch: Any, queue_name: str) -> dict[str, Any]:
    """Structured fields attached to every log line about one routed batch."""
    return {
        "signal_queue": queue_name,
        "signal_batch_id": batch.batch_id,
        "signal_user_id": str(batch.user_id),
        "signal_count": len(batch.signals),
        "signal_correlation_id": batch.correlation_id,
    }


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Configure root logger with either JSON or plaintext format."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
