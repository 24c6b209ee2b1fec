"""Command-line entry point.

    note-processor worker          run the background pipeline until signalled
    note-processor submit AUDIO    register a recording and transcribe it
    note-processor serve           run the notes backend HTTP API

The worker recovers unfinished sessions and uploads on start and shuts
down gracefully on SIGTERM/SIGINT.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from note_processor.asr.client import TranscriptionClient
from note_processor.asr.registry import get_transcription_engine
from note_processor.observability.logger import StructuredJsonFormatter
from note_processor.pipeline import PipelineOrchestrator
from note_processor.queue.scheduler import WorkScheduler
from note_processor.storage.artifacts import ArtifactStore
from note_processor.storage.session_store import SessionStore
from note_processor.storage.upload_store import UploadTaskStore
from note_processor.summarize.client import get_summarization_engine
from note_processor.sync.dispatcher import UploadDispatcher

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 25.0
POLL_INTERVAL_SECONDS = 30.0
DEFAULT_DB_PATH = "notes.db"


def _setup_logging() -> None:
    """Configure root logger with structured JSON output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


class Runtime:
    """Wires stores, scheduler, pipeline and uploads from the environment.

    Reads configuration from environment variables:
        NOTE_DB_PATH, TRANSCRIBE_PROVIDER, BACKEND_SUMMARIZE, SUMMARY_PROVIDER,
        WORKER_POLL_SECONDS
    """

    def __init__(self, db_path: str | None = None) -> None:
        db_path = db_path or os.environ.get("NOTE_DB_PATH", DEFAULT_DB_PATH)
        self.sessions = SessionStore(db_path)
        self.uploads = UploadTaskStore(db_path)
        self.artifacts = ArtifactStore()
        self.scheduler = WorkScheduler()
        self.poll_interval = float(
            os.environ.get("WORKER_POLL_SECONDS", POLL_INTERVAL_SECONDS)
        )

        provider = os.environ.get("TRANSCRIBE_PROVIDER", "openai")
        engine_kwargs: dict[str, object] = {}
        if provider == "backend":
            engine_kwargs["summarize"] = _env_flag("BACKEND_SUMMARIZE")
        engine = get_transcription_engine(provider, **engine_kwargs)

        summary_provider = os.environ.get("SUMMARY_PROVIDER", "deepseek")
        summarizer = (
            None
            if summary_provider in ("", "none")
            else get_summarization_engine(summary_provider)
        )

        self.pipeline = PipelineOrchestrator(
            store=self.sessions,
            scheduler=self.scheduler,
            artifacts=self.artifacts,
            transcription=TranscriptionClient(engine),
            summarizer=summarizer,
        )
        self.dispatcher = UploadDispatcher(
            store=self.uploads,
            scheduler=self.scheduler,
            artifacts=self.artifacts,
        )

    def recover(self) -> None:
        self.pipeline.recover_pending()
        self.dispatcher.recover_pending()

    async def close(self) -> None:
        await self.scheduler.shutdown(SHUTDOWN_TIMEOUT_SECONDS)
        if self.pipeline.summarizer is not None:
            await self.pipeline.summarizer.close()
        await self.dispatcher.close()


async def _run_worker(runtime: Runtime) -> None:
    """Run queued work until SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    while not stop_event.is_set():
        # Picks up sessions registered by other processes; dedupe skips queued ones
        runtime.recover()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=runtime.poll_interval)
        except asyncio.TimeoutError:
            pass
    await runtime.close()


async def _run_submit(runtime: Runtime, args: argparse.Namespace) -> int:
    """Register one recording, process it, and print the resulting session."""
    session_id = args.session_id or runtime.sessions.new_session_id()
    audio_ref = args.audio
    if "://" not in audio_ref:
        audio_ref = str(Path(audio_ref).resolve())

    runtime.sessions.create_or_update(
        session_id,
        time=args.time,
        location=args.location,
        people=args.people or None,
        hashtags=args.hashtags or None,
        note=args.note,
        audio_uri=audio_ref,
    )
    runtime.pipeline.enqueue_transcription(session_id)
    await runtime.scheduler.join()

    session = runtime.sessions.get(session_id)
    await runtime.close()
    if session is None:
        return 1
    print(f"{session.session_id}: {session.status_label}")
    if session.title:
        print(f"title: {session.title}")
    if session.summary:
        print(f"summary: {session.summary}")
    if session.transcript:
        print(session.transcript)
    return 0 if session.transcript else 1


def _serve() -> None:
    import uvicorn

    from note_processor.server.app import create_app

    port = int(os.environ.get("PORT", "8080"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_config=None)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="note-processor")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="process queued sessions and uploads")

    submit = sub.add_parser("submit", help="transcribe one recording")
    submit.add_argument("audio", help="local path, file://, s3:// or r2:// reference")
    submit.add_argument("--session-id")
    submit.add_argument("--time")
    submit.add_argument("--location")
    submit.add_argument("--note")
    submit.add_argument("--people", nargs="*", default=[])
    submit.add_argument("--hashtags", nargs="*", default=[])

    sub.add_parser("serve", help="run the backend HTTP API")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging()
    logger.info("Note processor starting: %s", args.command)

    if args.command == "serve":
        _serve()
        return 0

    runtime = Runtime()
    if args.command == "worker":
        asyncio.run(_run_worker(runtime))
        return 0
    return asyncio.run(_run_submit(runtime, args))


if __name__ == "__main__":
    sys.exit(main())
