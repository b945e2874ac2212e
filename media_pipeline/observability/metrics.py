"""Stage attempt metrics.

One JSON line per stage attempt goes to stdout, next to the regular
logs, so dashboards can chart durations, failure causes and retry
counts straight from the log stream.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime


@dataclass
class AttemptMetrics:
    """Everything recorded about a single stage attempt."""

    job_id: str
    stage: str
    outcome: str
    worker_id: str
    duration_seconds: float
    retry_count: int = 0
    next_state: str | None = None
    provider: str | None = None
    input_size_bytes: int = 0
    output_size_bytes: int = 0
    error_type: str | None = None
    error_message: str | None = None


class StageTimer:
    """Measures how long a stage handler ran.

    Durations come from the monotonic clock; ``start_time`` and
    ``end_time`` are wall-clock UTC for correlation with logs. ``failed``
    is set when the block exits with an exception, which is not
    suppressed.
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds = 0.0
        self.failed = False
        self._started = 0.0

    def __enter__(self) -> StageTimer:
        self._started = time.perf_counter()
        self.start_time = datetime.now(UTC)
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.end_time = datetime.now(UTC)
        self.duration_seconds = time.perf_counter() - self._started
        self.failed = exc_type is not None


def log_attempt_metrics(metrics: AttemptMetrics) -> None:
    """Print ``metrics`` as one ``stage_attempt`` JSON line."""
    line = asdict(metrics)
    line["metric_type"] = "stage_attempt"
    line["severity"] = "INFO" if metrics.outcome == "success" else "WARNING"
    line["timestamp"] = datetime.now(UTC).isoformat()
    print(json.dumps(line, default=str))
