"""Notes backend transcription client.

Uploads audio to the backend's /api/transcribe (or
/api/transcribe-and-summarize) endpoint. Small uploads are answered inline;
large ones are accepted with 202 and a job id, which is polled until the
job finishes. Several base URLs may be configured: a 404 on submission
moves on to the next candidate, any other failure is final.
"""

import asyncio
import logging
import os
from collections.abc import Callable

import httpx

from note_processor.asr.interface import ChunkTranscript, TranscriptionEngine
from note_processor.asr.media import media_type_for
from note_processor.utils.errors import (
    AudioNotFoundError,
    JobLostError,
    PollTimeoutError,
    RemoteJobError,
    TransportError,
    UnsupportedMediaError,
)

logger = logging.getLogger(__name__)

TRANSCRIBE_PATH = "/api/transcribe"
TRANSCRIBE_AND_SUMMARIZE_PATH = "/api/transcribe-and-summarize"
JOBS_PATH = "/api/jobs"
POLL_INTERVAL_SECONDS = 3.0
MAX_POLL_ATTEMPTS = 3600


def _parse_base_urls(value: str | list[str] | None) -> list[str]:
    if value is None:
        value = os.environ.get("BACKEND_BASE_URLS", "")
    if isinstance(value, str):
        value = value.split(",")
    return [url.strip().rstrip("/") for url in value if url and url.strip()]


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class BackendTranscriptionEngine(TranscriptionEngine):
    """Transcription through the notes backend, with job polling.

    Args:
        base_urls: Candidate base URLs, tried in order. Defaults to the
            comma-separated BACKEND_BASE_URLS environment variable.
        summarize: Use the transcribe-and-summarize endpoint so the result
            carries a title and summary.
        poll_interval: Seconds between job status polls.
        max_poll_attempts: Polls before giving up on a job.
        on_job_progress: Optional callback receiving the server's progress.
    """

    def __init__(
        self,
        base_urls: str | list[str] | None = None,
        summarize: bool = False,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        on_job_progress: Callable[[int], None] | None = None,
    ) -> None:
        self._base_urls = _parse_base_urls(base_urls)
        if not self._base_urls:
            raise ValueError("at least one backend base URL is required")
        self._summarize = summarize
        self._endpoint = (
            TRANSCRIBE_AND_SUMMARIZE_PATH if summarize else TRANSCRIBE_PATH
        )
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._on_job_progress = on_job_progress

    @property
    def source(self) -> str:
        return "backend:summarize" if self._summarize else "backend"

    async def transcribe_file(
        self, client: httpx.AsyncClient, audio_path: str
    ) -> ChunkTranscript:
        """Submit one file and wait for its transcript.

        Raises:
            TransportError: On network failure or a non-404 error status.
            JobLostError: If a polled job disappears from the server.
            RemoteJobError: If the server reports the job failed.
            PollTimeoutError: If the job outlives the polling bound.
        """
        status_code, body, base_url = await self._submit(client, audio_path)
        if status_code == 202:
            job_id = body.get("jobId")
            if not job_id:
                raise TransportError(
                    "Backend accepted the upload without a jobId",
                    status_code=status_code,
                    provider="backend",
                )
            logger.info("Backend job %s accepted, polling", job_id, extra={"job_id": job_id})
            return await self._poll_until_complete(client, base_url, job_id)
        return self._to_chunk(body)

    async def _submit(
        self, client: httpx.AsyncClient, audio_path: str
    ) -> tuple[int, dict, str]:
        """Upload the file to the first candidate that has the endpoint.

        Returns:
            (status code, JSON body, base URL that answered).
        """
        mime = media_type_for(audio_path)
        filename = os.path.basename(audio_path)

        for base_url in self._base_urls:
            url = f"{base_url}{self._endpoint}"
            try:
                with open(audio_path, "rb") as audio_file:
                    files = {"file": (filename, audio_file, mime)}
                    response = await client.post(url, files=files)
            except OSError as exc:
                raise AudioNotFoundError(
                    f"Chunk unreadable: {exc}", ref=audio_path
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportError(
                    f"Failed to reach {url}: {exc}", provider="backend"
                ) from exc

            if response.status_code == 404:
                logger.warning("Backend %s has no %s, trying next", base_url, self._endpoint)
                continue

            body = _json_body(response)

            if response.status_code == 415:
                raise UnsupportedMediaError(
                    body.get("error") or f"Backend rejected media type {mime}",
                    path=audio_path,
                )
            if response.status_code == 202 or 200 <= response.status_code < 300:
                return response.status_code, body, base_url

            raise TransportError(
                f"Transcription request failed with status {response.status_code}: "
                f"{body.get('error') or response.text}",
                status_code=response.status_code,
                provider="backend",
            )

        raise TransportError(
            f"No backend candidate serves {self._endpoint} "
            f"(tried {len(self._base_urls)})",
            status_code=404,
            provider="backend",
        )

    async def _poll_until_complete(
        self, client: httpx.AsyncClient, base_url: str, job_id: str
    ) -> ChunkTranscript:
        """Poll job status until done, error, or the attempt bound.

        Transient failures (network errors, non-200 other than 404) repeat
        the same poll.
        """
        url = f"{base_url}{JOBS_PATH}/{job_id}"

        for attempt in range(1, self._max_poll_attempts + 1):
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                logger.warning("Poll %d for job %s failed: %s", attempt, job_id, exc)
                await asyncio.sleep(self._poll_interval)
                continue

            if response.status_code == 404:
                raise JobLostError(
                    f"Job {job_id} no longer exists on the backend; resubmission required",
                    status_code=404,
                    provider="backend",
                )

            if response.status_code != 200:
                logger.warning(
                    "Poll %d for job %s returned %d",
                    attempt,
                    job_id,
                    response.status_code,
                )
                await asyncio.sleep(self._poll_interval)
                continue

            body = _json_body(response)
            status = body.get("status", "")

            if status == "done":
                logger.info("Backend job %s completed", job_id, extra={"job_id": job_id})
                return self._to_chunk(body)

            if status == "error":
                raise RemoteJobError(
                    body.get("error") or f"Job {job_id} failed",
                    provider="backend",
                )

            progress = body.get("progress")
            if self._on_job_progress is not None and isinstance(progress, int):
                self._on_job_progress(progress)

            await asyncio.sleep(self._poll_interval)

        raise PollTimeoutError(
            f"Job {job_id} not finished after {self._max_poll_attempts} polls",
            job_id=job_id,
        )

    @staticmethod
    def _to_chunk(body: dict) -> ChunkTranscript:
        return ChunkTranscript(
            text=str(body.get("text") or ""),
            title=body.get("title") or None,
            summary=body.get("summary") or None,
        )
