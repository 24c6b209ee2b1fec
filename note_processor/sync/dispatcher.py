"""Upload task dispatcher.

Each artifact upload is a persisted task run as its own network-gated
scheduler request, so an audio upload and its text companion never block
each other. Pending tasks survive restarts through recover_pending().
"""

from __future__ import annotations

import asyncio
import logging
import os

import httpx

from note_processor.queue.scheduler import (
    WorkContext,
    WorkOutcome,
    WorkRequest,
    WorkScheduler,
)
from note_processor.storage.artifacts import ArtifactStore
from note_processor.storage.upload_store import (
    STATUS_PENDING,
    UploadTask,
    UploadTaskStore,
)
from note_processor.sync.uploader import BackendUploader, DriveUploader
from note_processor.utils.errors import AudioNotFoundError, PipelineError

logger = logging.getLogger(__name__)

UPLOAD_BACKOFF_SECONDS = 10.0
UPLOAD_TIMEOUT_SECONDS = 300.0
AUDIO_MIME = "audio/mp4"
TEXT_MIME = "text/plain"

_EXTENSIONS = {AUDIO_MIME: ".m4a", TEXT_MIME: ".txt"}


class UploadDispatcher:
    """Persists upload tasks and runs them on the scheduler.

    Reads configuration from environment variables:
        DRIVE_FOLDER_ID, BACKEND_UPLOAD_URL

    When BACKEND_UPLOAD_URL is set uploads go through the backend;
    otherwise they go straight to Drive.
    """

    def __init__(
        self,
        store: UploadTaskStore,
        scheduler: WorkScheduler,
        artifacts: ArtifactStore,
        folder_id: str | None = None,
        backend_upload_url: str | None = None,
        drive_uploader: DriveUploader | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.artifacts = artifacts
        self.folder_id = folder_id or os.environ.get("DRIVE_FOLDER_ID", "")
        backend_url = backend_upload_url or os.environ.get("BACKEND_UPLOAD_URL", "")
        if backend_url:
            self.uploader: BackendUploader | DriveUploader = BackendUploader(backend_url)
        else:
            self.uploader = drive_uploader or DriveUploader()
        self._client = http_client or httpx.AsyncClient(timeout=UPLOAD_TIMEOUT_SECONDS)

    async def close(self) -> None:
        await self._client.aclose()

    def enqueue_upload(
        self,
        basename: str,
        artifact_ref: str,
        mime: str,
        display_name: str | None = None,
    ) -> UploadTask:
        """Persist an upload task and schedule it."""
        if display_name is None:
            ext = _EXTENSIONS.get(mime) or ArtifactStore.extension(artifact_ref)
            display_name = f"{basename}{ext}"
        task = self.store.add(basename, display_name, mime, artifact_ref)
        self._schedule(task.id)
        logger.info("Upload enqueued name=%s uri=%s", display_name, artifact_ref)
        return task

    def enqueue_session_artifacts(
        self, basename: str, audio_uri: str, text_uri: str
    ) -> list[UploadTask]:
        """Schedule the audio and text uploads for one recording."""
        return [
            self.enqueue_upload(basename, audio_uri, AUDIO_MIME),
            self.enqueue_upload(basename, text_uri, TEXT_MIME),
        ]

    def recover_pending(self) -> int:
        pending = self.store.list_pending()
        for task in pending:
            self._schedule(task.id)
        logger.info("Recovered %d pending upload(s)", len(pending))
        return len(pending)

    def _schedule(self, task_id: str) -> None:
        async def _run(ctx: WorkContext) -> WorkOutcome:
            return await self.run_upload(task_id, ctx)

        self.scheduler.enqueue(
            WorkRequest(
                name=f"upload:{task_id}",
                run=_run,
                requires_network=True,
                backoff_seconds=UPLOAD_BACKOFF_SECONDS,
            )
        )

    async def run_upload(self, task_id: str, ctx: WorkContext) -> WorkOutcome:
        """Execute one attempt of an upload task."""
        task = self.store.get(task_id)
        if task is None or task.status != STATUS_PENDING:
            return WorkOutcome.SUCCESS
        if not self.folder_id:
            logger.error("DRIVE_FOLDER_ID missing, failing upload %s", task.name)
            self.store.mark_failed(task_id, "drive_folder_id_missing")
            return WorkOutcome.FAILURE

        self.store.mark_attempt(task_id)
        try:
            data = await asyncio.to_thread(self.artifacts.fetch, task.uri)
            response = await self.uploader.upload(
                self._client, self.folder_id, task.name, task.mime, data
            )
        except asyncio.CancelledError:
            raise
        except AudioNotFoundError as exc:
            logger.error("Upload source missing for %s: %s", task.name, exc)
            self.store.mark_failed(task_id, exc.error_label)
            return WorkOutcome.FAILURE
        except PipelineError as exc:
            if exc.retryable and not ctx.is_last_attempt:
                logger.warning(
                    "Upload %s failed, will retry: %s",
                    task.name,
                    exc,
                    extra={"task_id": task_id, "attempt": ctx.attempt},
                )
                self.store.record_error(task_id, exc.error_label)
                return WorkOutcome.RETRY
            logger.error(
                "Upload %s failed: %s",
                task.name,
                exc,
                extra={"task_id": task_id, "attempt": ctx.attempt},
            )
            self.store.mark_failed(task_id, exc.error_label)
            return WorkOutcome.FAILURE

        self.store.mark_done(task_id, response.remote_id)
        logger.info(
            "Upload %s done (remote id %s)",
            task.name,
            response.remote_id,
            extra={"task_id": task_id},
        )
        return WorkOutcome.SUCCESS
