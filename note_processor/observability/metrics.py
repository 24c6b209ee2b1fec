"""Processing metrics collection and reporting.

Provides SessionMetrics for structured observability data, StageTimer for
measuring pipeline stage durations, and log_session_metrics() for emitting
metrics as one structured JSON line to stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime


@dataclass
class SessionMetrics:
    """All metrics collected for a single transcription run of a session."""

    session_id: str
    status: str
    attempt: int
    source: str
    audio_size_bytes: int
    chunk_count: int
    transcript_chars: int
    processing_wall_time_seconds: float
    fetch_duration_seconds: float
    prepare_duration_seconds: float
    transcribe_duration_seconds: float
    summarize_duration_seconds: float
    summary_status: str | None = None
    error_stage: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records wall-clock duration of a pipeline stage.

    Failed stages are recorded under ``_<stage>_failed`` in the optional
    timings dict so the failing stage can be reported.

    Usage:
        timings = {}
        with StageTimer("transcode", timings):
            do_work()
        print(timings["transcode"])
    """

    def __init__(
        self, stage_name: str, timings: dict[str, float] | None = None
    ) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._timings = timings
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        if self._timings is None:
            return
        if exc_type is not None:
            self._timings[f"_{self.stage_name}_failed"] = self.duration_seconds
        else:
            self._timings[self.stage_name] = self.duration_seconds


def failed_stage(timings: dict[str, float], default: str = "unknown") -> str:
    """Return the stage recorded as failed in ``timings``, if any."""
    for key in timings:
        if key.startswith("_") and key.endswith("_failed"):
            return key[1 : -len("_failed")]
    return default


def log_session_metrics(metrics: SessionMetrics) -> None:
    """Emit session metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated SessionMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "session_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry, ensure_ascii=False))
