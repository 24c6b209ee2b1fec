"""In-memory registry of server-side transcription jobs.

Jobs exist only for the lifetime of the server process. A client that
polls an id the process no longer knows gets a 404 and resubmits.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict, dataclass, field

JOB_TTL_SECONDS = 60 * 60

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_ERROR = "error"


@dataclass
class Job:
    id: str
    status: str = JOB_PENDING
    progress: int = 0
    text: str | None = None
    title: str | None = None
    summary: str | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def finished(self) -> bool:
        return self.status in (JOB_DONE, JOB_ERROR)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("created_at")
        data.pop("updated_at")
        return data


class JobRegistry:
    """Thread-safe job table. Finished jobs older than ttl are pruned on create and get."""

    def __init__(self, ttl_seconds: float = JOB_TTL_SECONDS) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._ttl = ttl_seconds

    def create(self) -> Job:
        job = Job(id=uuid.uuid4().hex)
        with self._lock:
            self._prune_locked()
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            self._prune_locked()
            return self._jobs.get(job_id)

    def update(self, job_id: str, **fields: object) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = time.time()

    def set_progress(self, job_id: str, progress: int) -> None:
        self.update(
            job_id, status=JOB_PROCESSING, progress=max(0, min(100, int(progress)))
        )

    def complete(
        self,
        job_id: str,
        text: str,
        title: str | None = None,
        summary: str | None = None,
    ) -> None:
        self.update(
            job_id, status=JOB_DONE, progress=100, text=text, title=title, summary=summary
        )

    def fail(self, job_id: str, error: str) -> None:
        self.update(job_id, status=JOB_ERROR, error=error)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _prune_locked(self) -> None:
        cutoff = time.time() - self._ttl
        expired = [
            jid for jid, job in self._jobs.items()
            if job.finished and job.updated_at < cutoff
        ]
        for jid in expired:
            del self._jobs[jid]
