"""HTTP surface of the notes backend.

Transcription requests small enough to answer inline are processed during
the request. Larger uploads get a job id (HTTP 202) and are processed in
the background; clients poll /api/jobs/{id}. Jobs are held in memory only.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile

from fastapi import APIRouter, BackgroundTasks, FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse
import httpx
from pydantic import BaseModel

from note_processor import __version__
from note_processor.asr.client import TranscriptionClient
from note_processor.asr.interface import TranscriptionResult
from note_processor.asr.media import media_type_for
from note_processor.asr.openai_whisper import OpenAIWhisperEngine
from note_processor.audio.segmenter import MAX_CHUNK_BYTES, prepare
from note_processor.storage.job_registry import JobRegistry
from note_processor.summarize.client import ChatSummarizationClient, SummarizationEngine
from note_processor.sync.uploader import DriveUploader
from note_processor.utils.errors import PipelineError, UnsupportedMediaError

logger = logging.getLogger(__name__)

SYNC_BUDGET_BYTES = MAX_CHUNK_BYTES


class SummarizeRequest(BaseModel):
    text: str | None = None


def _sanitize_filename(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", name or "")
    return cleaned or "audio.m4a"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _status_for(exc: PipelineError) -> int:
    if isinstance(exc, UnsupportedMediaError):
        return 415
    if exc.retryable:
        return 502
    return 500


class NotesBackend:
    """Request handlers' collaborators."""

    def __init__(
        self,
        transcription: TranscriptionClient,
        summarizer: SummarizationEngine,
        drive_uploader: DriveUploader,
        jobs: JobRegistry,
        sync_budget_bytes: int = SYNC_BUDGET_BYTES,
    ) -> None:
        self.transcription = transcription
        self.summarizer = summarizer
        self.drive_uploader = drive_uploader
        self.jobs = jobs
        self.sync_budget_bytes = sync_budget_bytes

    async def transcribe_bytes(
        self, data: bytes, filename: str, on_progress=None
    ) -> TranscriptionResult:
        with tempfile.TemporaryDirectory(prefix="notes-upload-") as work_dir:
            chunks = await asyncio.to_thread(prepare, data, work_dir, filename)
            return await self.transcription.transcribe(chunks, on_progress=on_progress)

    async def summarize_best_effort(self, text: str) -> tuple[str | None, str | None]:
        """Return (title, summary); a failed summary leaves both None."""
        try:
            result = await self.summarizer.summarize(text)
        except PipelineError as exc:
            logger.warning("Summary failed, returning transcript only: %s", exc)
            return None, None
        return result.title or None, result.summary

    async def run_job(
        self, job_id: str, data: bytes, filename: str, summarize: bool
    ) -> None:
        logger.info("Job started (%d bytes)", len(data), extra={"job_id": job_id})
        self.jobs.set_progress(job_id, 0)
        try:
            result = await self.transcribe_bytes(
                data,
                filename,
                on_progress=lambda p: self.jobs.set_progress(job_id, min(p, 99)),
            )
            title = summary = None
            if summarize:
                title, summary = await self.summarize_best_effort(result.text)
        except Exception as exc:
            logger.error("Job failed", exc_info=True, extra={"job_id": job_id})
            message = exc.message if isinstance(exc, PipelineError) else str(exc)
            self.jobs.fail(job_id, message or type(exc).__name__)
            return
        self.jobs.complete(job_id, result.text, title=title, summary=summary)
        logger.info("Job done", extra={"job_id": job_id})


def create_api_router(backend: NotesBackend) -> APIRouter:
    router = APIRouter()

    async def _transcribe(
        file: UploadFile | None, background: BackgroundTasks, summarize: bool
    ) -> JSONResponse | dict:
        if file is None:
            return _error(400, "file missing")
        filename = _sanitize_filename(file.filename or "")
        try:
            media_type_for(filename)
        except UnsupportedMediaError as exc:
            return _error(415, exc.message)

        data = await file.read()
        if not data:
            return _error(400, "file empty")

        if len(data) > backend.sync_budget_bytes:
            job = backend.jobs.create()
            background.add_task(backend.run_job, job.id, data, filename, summarize)
            logger.info("Upload of %d bytes deferred to job", len(data), extra={"job_id": job.id})
            return JSONResponse(status_code=202, content={"jobId": job.id})

        try:
            result = await backend.transcribe_bytes(data, filename)
        except PipelineError as exc:
            logger.error("Transcription failed: %s", exc, exc_info=True)
            return _error(_status_for(exc), exc.message)

        if not summarize:
            return {"text": result.text}
        title, summary = await backend.summarize_best_effort(result.text)
        return {"text": result.text, "title": title or "", "summary": summary or ""}

    @router.post("/api/transcribe")
    async def transcribe(
        background: BackgroundTasks, file: UploadFile | None = File(None)
    ):
        return await _transcribe(file, background, summarize=False)

    @router.post("/api/transcribe-and-summarize")
    async def transcribe_and_summarize(
        background: BackgroundTasks, file: UploadFile | None = File(None)
    ):
        return await _transcribe(file, background, summarize=True)

    @router.get("/api/jobs/{job_id}")
    async def get_job(job_id: str):
        job = backend.jobs.get(job_id)
        if job is None:
            return _error(404, "job not found")
        return job.to_dict()

    @router.post("/api/summarize")
    async def summarize(body: SummarizeRequest):
        if not body.text or not body.text.strip():
            return _error(400, "text missing")
        try:
            result = await backend.summarizer.summarize(body.text)
        except PipelineError as exc:
            logger.error("Summarize failed: %s", exc)
            return _error(_status_for(exc), exc.message)
        return {"title": result.title, "summary": result.summary, "tags": result.tags}

    @router.post("/upload")
    async def upload(
        file: UploadFile | None = File(None),
        folderId: str = Form(""),
        name: str = Form(""),
        mime: str = Form(""),
    ):
        if file is None:
            return _error(400, "file missing")
        if not folderId:
            return _error(400, "folderId missing")
        data = await file.read()
        upload_name = name or file.filename or "upload"
        upload_mime = mime or file.content_type or "application/octet-stream"
        try:
            async with httpx.AsyncClient(timeout=300.0) as client:
                response = await backend.drive_uploader.upload(
                    client, folderId, upload_name, upload_mime, data
                )
        except PipelineError as exc:
            logger.error("Drive upload failed: %s", exc)
            return _error(502, exc.message)
        return {"id": response.remote_id}

    @router.get("/api/ping")
    async def ping():
        return {"ok": True}

    return router


def create_app(
    transcription: TranscriptionClient | None = None,
    summarizer: SummarizationEngine | None = None,
    drive_uploader: DriveUploader | None = None,
    jobs: JobRegistry | None = None,
    sync_budget_bytes: int | None = None,
) -> FastAPI:
    """Build the backend application.

    Unspecified collaborators are configured from the environment
    (OPENAI_*, DEEPSEEK_*, GOOGLE_*, SYNC_BUDGET_BYTES).
    """
    if sync_budget_bytes is None:
        sync_budget_bytes = int(os.environ.get("SYNC_BUDGET_BYTES", SYNC_BUDGET_BYTES))
    backend = NotesBackend(
        transcription=transcription or TranscriptionClient(OpenAIWhisperEngine()),
        summarizer=summarizer or ChatSummarizationClient(),
        drive_uploader=drive_uploader or DriveUploader(),
        jobs=jobs or JobRegistry(),
        sync_budget_bytes=sync_budget_bytes,
    )
    app = FastAPI(title="notes-backend", version=__version__)
    app.state.backend = backend
    app.include_router(create_api_router(backend))
    return app
