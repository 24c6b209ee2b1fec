"""Persistent upload task queue.

Upload tasks live in their own table so a pending upload survives a
restart and is independent of the session it came from.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from note_processor.storage.sqlite import SqliteDatabase
from note_processor.utils.errors import StorageError

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DONE = "done"
STATUS_FAILED = "failed"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS upload_tasks (
    id TEXT PRIMARY KEY,
    basename TEXT NOT NULL,
    name TEXT NOT NULL,
    mime TEXT NOT NULL,
    uri TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    remote_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


@dataclass
class UploadTask:
    id: str
    basename: str
    name: str
    mime: str
    uri: str
    status: str
    attempts: int
    created_at: str
    updated_at: str
    last_error: str | None = None
    remote_id: str | None = None


class UploadTaskStore:
    """CRUD over the upload_tasks table."""

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = SqliteDatabase(db_path, SCHEMA_SQL)
        self._clock = clock or (lambda: datetime.now(UTC))

    def _now(self) -> str:
        return self._clock().isoformat()

    def add(self, basename: str, name: str, mime: str, uri: str) -> UploadTask:
        task_id = uuid.uuid4().hex
        now = self._now()
        self.db.execute(
            "INSERT INTO upload_tasks (id, basename, name, mime, uri, status, "
            "attempts, created_at, updated_at) VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?)",
            (task_id, basename, name, mime, uri, now, now),
        )
        task = self.get(task_id)
        if task is None:
            raise StorageError(f"Upload task {task_id} missing after insert", operation="add")
        return task

    def get(self, task_id: str) -> UploadTask | None:
        row = self.db.fetchone("SELECT * FROM upload_tasks WHERE id = ?", (task_id,))
        return UploadTask(**row) if row else None

    def mark_attempt(self, task_id: str) -> None:
        self.db.execute(
            "UPDATE upload_tasks SET attempts = attempts + 1, updated_at = ? WHERE id = ?",
            (self._now(), task_id),
        )

    def mark_done(self, task_id: str, remote_id: str | None = None) -> None:
        self.db.execute(
            "UPDATE upload_tasks SET status = 'done', remote_id = ?, last_error = NULL, "
            "updated_at = ? WHERE id = ?",
            (remote_id, self._now(), task_id),
        )

    def mark_failed(self, task_id: str, error: str) -> None:
        self.db.execute(
            "UPDATE upload_tasks SET status = 'failed', last_error = ?, updated_at = ? "
            "WHERE id = ?",
            (error, self._now(), task_id),
        )

    def record_error(self, task_id: str, error: str) -> None:
        """Keep the task pending but remember why the last attempt failed."""
        self.db.execute(
            "UPDATE upload_tasks SET last_error = ?, updated_at = ? WHERE id = ?",
            (error, self._now(), task_id),
        )

    def list_pending(self) -> list[UploadTask]:
        rows = self.db.fetchall(
            "SELECT * FROM upload_tasks WHERE status = 'pending' ORDER BY created_at ASC"
        )
        return [UploadTask(**r) for r in rows]

    def list_all(self) -> list[UploadTask]:
        rows = self.db.fetchall("SELECT * FROM upload_tasks ORDER BY created_at DESC")
        return [UploadTask(**r) for r in rows]
