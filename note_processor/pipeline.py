"""Session transcription orchestrator.

One unit of work per session: fetch audio -> prepare chunks -> transcribe
-> persist transcript -> summarize -> persist summary. Units run on a single
global serial queue, so at most one session is transcribed at a time.

Failures are classified by the exception that raised them (see
utils.errors). Retryable failures return the session to audio_state 'none'
and ask the scheduler for another attempt; fatal failures, and retryable
ones on the last attempt, record the error on the session.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from typing import Protocol

from note_processor.asr.client import TranscriptionClient
from note_processor.asr.interface import TranscriptionResult
from note_processor.asr.media import media_type_for
from note_processor.audio.segmenter import prepare
from note_processor.observability.metrics import (
    SessionMetrics,
    StageTimer,
    failed_stage,
    log_session_metrics,
)
from note_processor.queue.scheduler import (
    WorkContext,
    WorkOutcome,
    WorkRequest,
    WorkScheduler,
)
from note_processor.storage.artifacts import ArtifactStore
from note_processor.storage.session_store import AudioState, SessionStore, SummaryState
from note_processor.summarize.client import SummarizationEngine
from note_processor.utils.errors import PipelineError

logger = logging.getLogger(__name__)

TRANSCRIBE_QUEUE = "transcribe_global_queue"
TRANSCRIBE_BACKOFF_SECONDS = 10.0
SUMMARY_BACKOFF_SECONDS = 10.0
DEFAULT_AUDIO_EXTENSION = ".m4a"


class ProgressReporter(Protocol):
    def on_progress(self, session_id: str, percent: int) -> None: ...


class LivenessSignal(Protocol):
    """Keeps the host process alive while a session is being transcribed."""

    def keep_alive(self, session_id: str) -> None: ...

    def release(self, session_id: str) -> None: ...


class LoggingProgressReporter:
    def on_progress(self, session_id: str, percent: int) -> None:
        logger.info(
            "Transcription progress %d%%",
            percent,
            extra={"session_id": session_id, "progress": percent},
        )


class LoggingLiveness:
    def keep_alive(self, session_id: str) -> None:
        logger.debug("Holding liveness", extra={"session_id": session_id})

    def release(self, session_id: str) -> None:
        logger.debug("Released liveness", extra={"session_id": session_id})


def _classify(exc: BaseException) -> tuple[str, bool]:
    """Return (error label, retryable) for a failure."""
    if isinstance(exc, PipelineError):
        return exc.error_label, exc.retryable
    # Unclassified failures are treated as transient
    return f"unexpected_error: {type(exc).__name__}: {exc}", True


class PipelineOrchestrator:
    """Runs transcription and summarization for sessions.

    Args:
        store: Session table.
        scheduler: Runs the work units.
        artifacts: Resolves audio_uri references to bytes.
        transcription: Multi-chunk transcription client.
        summarizer: Optional summarization provider. Without one, sessions
            stop after the transcript unless the transcription engine
            already produced a summary.
        progress: Progress sink.
        liveness: Host keep-alive hook.
    """

    def __init__(
        self,
        store: SessionStore,
        scheduler: WorkScheduler,
        artifacts: ArtifactStore,
        transcription: TranscriptionClient,
        summarizer: SummarizationEngine | None = None,
        progress: ProgressReporter | None = None,
        liveness: LivenessSignal | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.artifacts = artifacts
        self.transcription = transcription
        self.summarizer = summarizer
        self.progress = progress or LoggingProgressReporter()
        self.liveness = liveness or LoggingLiveness()

    def enqueue_transcription(self, session_id: str) -> bool:
        """Append a session to the global transcription queue.

        Returns:
            False if the session is already queued, running, or backing off.
        """

        async def _run(ctx: WorkContext) -> WorkOutcome:
            return await self.process_session(session_id, ctx)

        request = WorkRequest(
            name=session_id,
            run=_run,
            backoff_seconds=TRANSCRIBE_BACKOFF_SECONDS,
        )
        queued = self.scheduler.enqueue_unique(TRANSCRIBE_QUEUE, request)
        if queued:
            logger.info("Transcription enqueued", extra={"session_id": session_id})
        return queued

    def enqueue_summary(self, session_id: str) -> bool:
        """Schedule a network-gated summary retry for a transcribed session."""

        async def _run(ctx: WorkContext) -> WorkOutcome:
            state = await self.summarize_session(session_id)
            if state is SummaryState.WAITING_NETWORK:
                return WorkOutcome.RETRY
            return WorkOutcome.SUCCESS

        return self.scheduler.enqueue(
            WorkRequest(
                name=f"summary:{session_id}",
                run=_run,
                requires_network=True,
                backoff_seconds=SUMMARY_BACKOFF_SECONDS,
            )
        )

    async def process_session(self, session_id: str, ctx: WorkContext) -> WorkOutcome:
        """Transcribe and summarize one session.

        Args:
            session_id: Session to process.
            ctx: Attempt information from the scheduler.

        Returns:
            SUCCESS, RETRY (transient failure, attempts left) or FAILURE.
        """
        wall_start = time.monotonic()
        timings: dict[str, float] = {}
        log_extra = {"session_id": session_id, "attempt": ctx.attempt}

        session = self.store.get(session_id)
        if session is None:
            logger.warning("Session not found, dropping work", extra=log_extra)
            return WorkOutcome.FAILURE
        if session.audio_state is AudioState.DONE and session.transcript:
            logger.info("Session already transcribed", extra=log_extra)
            return WorkOutcome.SUCCESS

        logger.info("Transcription started", extra=log_extra)
        self.store.set_transcribing(session_id)
        self.liveness.keep_alive(session_id)
        self.progress.on_progress(session_id, 0)

        audio_size = 0
        result: TranscriptionResult | None = None
        try:
            result, audio_size = await self._transcribe(
                session_id, session.audio_uri or "", timings
            )
            self.store.set_transcript(session_id, result.text, result.source)
        except asyncio.CancelledError:
            logger.warning("Transcription cancelled", extra=log_extra)
            self.store.reset_transcribing(session_id)
            raise
        except Exception as exc:
            outcome = self._handle_failure(session_id, exc, ctx)
            self._log_metrics(
                session_id,
                ctx,
                outcome,
                timings,
                wall_start,
                audio_size=audio_size,
                error=exc,
            )
            return outcome
        finally:
            self.liveness.release(session_id)

        self.progress.on_progress(session_id, 100)
        logger.info(
            "Transcript stored (%d chars)",
            len(result.text),
            extra={**log_extra, "stage": "transcribe"},
        )

        with StageTimer("summarize", timings):
            summary_state = await self._summarize_after_transcript(session_id, result)
        if summary_state is SummaryState.WAITING_NETWORK:
            self.enqueue_summary(session_id)

        self._log_metrics(
            session_id,
            ctx,
            WorkOutcome.SUCCESS,
            timings,
            wall_start,
            audio_size=audio_size,
            result=result,
            summary_state=summary_state,
        )
        return WorkOutcome.SUCCESS

    async def _transcribe(
        self, session_id: str, audio_uri: str, timings: dict[str, float]
    ) -> tuple[TranscriptionResult, int]:
        """Fetch, prepare and transcribe in a scratch directory for this attempt."""
        ext = ArtifactStore.extension(audio_uri) or DEFAULT_AUDIO_EXTENSION
        # Reject the input type before fetching; transcoded chunks are always mp3
        media_type_for(f"audio{ext}")

        with tempfile.TemporaryDirectory(prefix=f"note-{session_id}-") as work_dir:
            with StageTimer("fetch", timings):
                audio = await asyncio.to_thread(self.artifacts.fetch, audio_uri)

            with StageTimer("prepare", timings):
                chunks = await asyncio.to_thread(
                    prepare, audio, work_dir, f"audio{ext}"
                )
            logger.info(
                "Prepared %d chunk(s)",
                len(chunks),
                extra={"session_id": session_id, "stage": "prepare"},
            )

            with StageTimer("transcribe", timings):
                result = await self.transcription.transcribe(
                    chunks,
                    on_progress=lambda p: self.progress.on_progress(session_id, p),
                )
        return result, len(audio)

    def _handle_failure(
        self, session_id: str, exc: BaseException, ctx: WorkContext
    ) -> WorkOutcome:
        label, retryable = _classify(exc)
        extra = {"session_id": session_id, "attempt": ctx.attempt, "error": label}

        if retryable and not ctx.is_last_attempt:
            logger.warning("Transient transcription failure, will retry: %s", exc, extra=extra)
            self.store.reset_transcribing(session_id)
            return WorkOutcome.RETRY

        logger.error("Transcription failed: %s", exc, exc_info=exc, extra=extra)
        self.store.set_transcribe_error(session_id, label)
        return WorkOutcome.FAILURE

    async def _summarize_after_transcript(
        self, session_id: str, result: TranscriptionResult
    ) -> SummaryState:
        if result.summary:
            self.store.set_summary(session_id, result.summary, title=result.title)
            return SummaryState.DONE
        if self.summarizer is None:
            return SummaryState.NONE
        return await self.summarize_session(session_id)

    async def summarize_session(self, session_id: str) -> SummaryState:
        """Summarize a transcribed session and persist the outcome.

        Failures are recorded on the session and never touch the transcript:
        retryable ones leave summary_state 'waiting_network', fatal ones
        mark it 'done' with summary_error set.

        Returns:
            The session's resulting summary state.
        """
        session = self.store.get(session_id)
        if session is None or not session.transcript:
            logger.warning("No transcript to summarize", extra={"session_id": session_id})
            return SummaryState.NONE
        if self.summarizer is None:
            return session.summary_state

        self.store.set_summary_waiting(session_id)
        try:
            summary = await self.summarizer.summarize(
                session.transcript, meta=session.metadata()
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            label, retryable = _classify(exc)
            logger.warning(
                "Summarization failed: %s",
                exc,
                exc_info=True,
                extra={"session_id": session_id, "stage": "summarize", "error": label},
            )
            self.store.set_summary_error(session_id, label, retryable=retryable)
            return SummaryState.WAITING_NETWORK if retryable else SummaryState.DONE

        self.store.set_summary(
            session_id,
            summary.summary,
            title=summary.title or None,
            tags=summary.tags,
        )
        logger.info("Summary stored", extra={"session_id": session_id, "stage": "summarize"})
        return SummaryState.DONE

    def recover_pending(self) -> int:
        """Re-enqueue work left unfinished by a previous process.

        Returns:
            Number of sessions queued for transcription.
        """
        count = 0
        for session in self.store.list_pending_transcription():
            if self.enqueue_transcription(session.session_id):
                count += 1
        if self.summarizer is not None:
            for session in self.store.list_pending_summary():
                # The transcription unit summarizes in-line while it is active
                if self.scheduler.is_pending(TRANSCRIBE_QUEUE, session.session_id):
                    continue
                self.enqueue_summary(session.session_id)
        logger.info("Recovered %d pending session(s)", count)
        return count

    def _log_metrics(
        self,
        session_id: str,
        ctx: WorkContext,
        outcome: WorkOutcome,
        timings: dict[str, float],
        wall_start: float,
        audio_size: int = 0,
        result: TranscriptionResult | None = None,
        summary_state: SummaryState | None = None,
        error: BaseException | None = None,
    ) -> None:
        error_label = _classify(error)[0] if error is not None else None
        log_session_metrics(
            SessionMetrics(
                session_id=session_id,
                status=outcome.value,
                attempt=ctx.attempt,
                source=result.source if result else "",
                audio_size_bytes=audio_size,
                chunk_count=result.chunk_count if result else 0,
                transcript_chars=len(result.text) if result else 0,
                processing_wall_time_seconds=time.monotonic() - wall_start,
                fetch_duration_seconds=timings.get("fetch", 0.0),
                prepare_duration_seconds=timings.get("prepare", 0.0),
                transcribe_duration_seconds=timings.get("transcribe", 0.0),
                summarize_duration_seconds=timings.get("summarize", 0.0),
                summary_status=summary_state.value if summary_state else None,
                error_stage=failed_stage(timings) if error is not None else None,
                error_message=error_label,
            )
        )
