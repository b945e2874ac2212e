"""Structured JSON logging for the API and worker processes.

Each record becomes one JSON object on stdout so log collectors can
index job ids and stages without parsing free text.
"""

import json
import logging
import sys
from datetime import UTC, datetime

# Attributes callers may attach through the ``extra`` kwarg
EXTRA_FIELDS = (
    "job_id",
    "stage",
    "worker_id",
    "state",
    "retry_count",
    "duration_seconds",
    "error",
)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class StructuredJsonFormatter(logging.Formatter):
    """Render a LogRecord as a single-line JSON document.

    Output keys: ``timestamp`` (UTC, second precision), ``severity``,
    ``logger``, ``message``, any of EXTRA_FIELDS present on the record,
    and ``exception`` / ``exception_type`` when exc_info is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, object] = {
            "timestamp": created.strftime(_TIMESTAMP_FORMAT),
            "severity": record.levelname
            if record.levelno in logging.getLevelNamesMapping().values()
            else "DEFAULT",
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            payload["exception"] = str(exc)
            payload["exception_type"] = type(exc).__name__

        return json.dumps(payload, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Send root logging to stdout through StructuredJsonFormatter.

    Safe to call more than once; an existing JSON handler is reused.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h.formatter, StructuredJsonFormatter) for h in root.handlers):
        return
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(stdout_handler)
