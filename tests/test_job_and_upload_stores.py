"""Tests for the upload task table and the in-memory job registry."""

from unittest.mock import patch

import pytest

from note_processor.storage.job_registry import (
    JOB_DONE,
    JOB_ERROR,
    JOB_PENDING,
    JOB_PROCESSING,
    JobRegistry,
)
from note_processor.storage.upload_store import (
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    UploadTaskStore,
)
from note_processor.utils.errors import StorageError


@pytest.fixture
def uploads(tmp_path) -> UploadTaskStore:
    return UploadTaskStore(tmp_path / "notes.db")


class TestUploadTaskStore:
    def test_add_starts_pending(self, uploads: UploadTaskStore) -> None:
        task = uploads.add("s1", "s1.m4a", "audio/mp4", "/rec/s1.m4a")

        assert task.status == STATUS_PENDING
        assert task.attempts == 0
        assert task.remote_id is None
        assert uploads.list_pending() == [task]

    def test_attempts_and_errors(self, uploads: UploadTaskStore) -> None:
        task = uploads.add("s1", "s1.txt", "text/plain", "/rec/s1.txt")

        uploads.mark_attempt(task.id)
        uploads.record_error(task.id, "upload_error: 503")
        uploads.mark_attempt(task.id)

        stored = uploads.get(task.id)
        assert stored.attempts == 2
        assert stored.last_error == "upload_error: 503"
        assert stored.status == STATUS_PENDING

    def test_done_clears_error(self, uploads: UploadTaskStore) -> None:
        task = uploads.add("s1", "s1.m4a", "audio/mp4", "/rec/s1.m4a")
        uploads.record_error(task.id, "upload_error: 503")

        uploads.mark_done(task.id, remote_id="drive-123")

        stored = uploads.get(task.id)
        assert stored.status == STATUS_DONE
        assert stored.remote_id == "drive-123"
        assert stored.last_error is None
        assert uploads.list_pending() == []

    def test_failed_is_not_pending(self, uploads: UploadTaskStore) -> None:
        task = uploads.add("s1", "s1.m4a", "audio/mp4", "/rec/s1.m4a")
        uploads.mark_failed(task.id, "audio_not_found")

        assert uploads.get(task.id).status == STATUS_FAILED
        assert uploads.list_pending() == []
        assert len(uploads.list_all()) == 1

    def test_row_missing_after_insert_raises(self, uploads: UploadTaskStore) -> None:
        with patch.object(uploads, "get", return_value=None):
            with pytest.raises(StorageError) as exc_info:
                uploads.add("s1", "s1.m4a", "audio/mp4", "/a.m4a")
        assert exc_info.value.retryable is True

    def test_shares_database_with_sessions(self, tmp_path) -> None:
        from note_processor.storage.session_store import SessionStore

        db = tmp_path / "shared.db"
        SessionStore(db).create_or_update("s1")
        UploadTaskStore(db).add("s1", "s1.m4a", "audio/mp4", "/a")

        assert SessionStore(db).get("s1") is not None


class TestJobRegistry:
    def test_lifecycle(self) -> None:
        jobs = JobRegistry()
        job = jobs.create()
        assert job.status == JOB_PENDING

        jobs.set_progress(job.id, 140)
        assert jobs.get(job.id).status == JOB_PROCESSING
        assert jobs.get(job.id).progress == 100

        jobs.complete(job.id, "text", title="T")
        done = jobs.get(job.id)
        assert done.status == JOB_DONE
        assert done.finished
        assert done.to_dict() == {
            "id": job.id,
            "status": JOB_DONE,
            "progress": 100,
            "text": "text",
            "title": "T",
            "summary": None,
            "error": None,
        }

    def test_fail(self) -> None:
        jobs = JobRegistry()
        job = jobs.create()
        jobs.fail(job.id, "backend_empty_output")
        assert jobs.get(job.id).status == JOB_ERROR
        assert jobs.get(job.id).error == "backend_empty_output"

    def test_unknown_job_updates_are_ignored(self) -> None:
        jobs = JobRegistry()
        jobs.complete("missing", "text")
        assert jobs.get("missing") is None

    def test_finished_jobs_expire(self) -> None:
        jobs = JobRegistry(ttl_seconds=60)
        with patch("note_processor.storage.job_registry.time.time", return_value=1000.0):
            finished = jobs.create()
            running = jobs.create()
            jobs.complete(finished.id, "x")
            jobs.set_progress(running.id, 10)

        with patch("note_processor.storage.job_registry.time.time", return_value=1100.0):
            jobs.create()

        assert jobs.get(finished.id) is None
        assert jobs.get(running.id) is not None
        assert len(jobs) == 2

    def test_lookup_prunes_expired_jobs(self) -> None:
        jobs = JobRegistry(ttl_seconds=60)
        with patch("note_processor.storage.job_registry.time.time", return_value=1000.0):
            finished = jobs.create()
            jobs.fail(finished.id, "boom")

        with patch("note_processor.storage.job_registry.time.time", return_value=1030.0):
            assert jobs.get(finished.id) is not None

        with patch("note_processor.storage.job_registry.time.time", return_value=1100.0):
            assert jobs.get(finished.id) is None
        assert len(jobs) == 0
