"""Tests for note_processor.observability.metrics module."""

from __future__ import annotations

import json
import time
from dataclasses import asdict

import pytest

from note_processor.observability.metrics import (
    SessionMetrics,
    StageTimer,
    failed_stage,
    log_session_metrics,
)


def _make_session_metrics(**overrides) -> SessionMetrics:
    """Create a SessionMetrics with sensible defaults, applying any overrides."""
    defaults = {
        "session_id": "20240301093000",
        "status": "success",
        "attempt": 1,
        "source": "openai:whisper-1",
        "audio_size_bytes": 5_000_000,
        "chunk_count": 1,
        "transcript_chars": 11,
        "processing_wall_time_seconds": 4.2,
        "fetch_duration_seconds": 0.1,
        "prepare_duration_seconds": 0.0,
        "transcribe_duration_seconds": 3.9,
        "summarize_duration_seconds": 0.2,
        "summary_status": "done",
    }
    defaults.update(overrides)
    return SessionMetrics(**defaults)


class TestLogSessionMetrics:
    def test_output_is_valid_json_with_envelope_fields(self, capsys):
        log_session_metrics(_make_session_metrics())

        parsed = json.loads(capsys.readouterr().out.strip())

        assert "timestamp" in parsed
        assert parsed["severity"] == "INFO"
        assert parsed["metric_type"] == "session_completion"

    def test_output_contains_all_fields(self, capsys):
        metrics = _make_session_metrics()
        log_session_metrics(metrics)

        parsed = json.loads(capsys.readouterr().out.strip())
        for key in asdict(metrics):
            assert key in parsed, f"Missing key: {key}"

    def test_failure_fields(self, capsys):
        log_session_metrics(
            _make_session_metrics(
                status="failure",
                error_stage="transcribe",
                error_message="backend_empty_output",
                summary_status=None,
            )
        )
        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["error_stage"] == "transcribe"
        assert parsed["error_message"] == "backend_empty_output"
        assert parsed["summary_status"] is None


class TestStageTimer:
    def test_captures_positive_duration(self):
        timer = StageTimer("prepare")
        with timer:
            time.sleep(0.01)

        assert timer.duration_seconds > 0.0
        assert timer.end_time >= timer.start_time

    def test_records_into_timings(self):
        timings: dict[str, float] = {}
        with StageTimer("fetch", timings):
            pass
        assert "fetch" in timings

    def test_failed_stage_marked(self):
        timings: dict[str, float] = {}
        with pytest.raises(ValueError, match="boom"):
            with StageTimer("transcribe", timings):
                raise ValueError("boom")

        assert "transcribe" not in timings
        assert "_transcribe_failed" in timings
        assert failed_stage(timings) == "transcribe"


def test_failed_stage_defaults_when_nothing_failed():
    assert failed_stage({"fetch": 0.1}) == "unknown"
    assert failed_stage({}, default="init") == "init"
