"""Multi-chunk transcription client.

Validates every chunk's media type up front, then transcribes chunks one
after another through a single engine and joins the text in order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from note_processor.asr.interface import (
    ChunkTranscript,
    TranscriptionEngine,
    TranscriptionResult,
)
from note_processor.asr.media import ensure_supported
from note_processor.utils.errors import EmptyTranscriptionError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 600.0


class TranscriptionClient:
    """Drive a TranscriptionEngine over an ordered list of chunks.

    Args:
        engine: The provider engine used for every chunk.
        http_client: Optional shared client; a fresh one is opened per
            transcribe() call otherwise.
        timeout: Per-request timeout for the owned client.
    """

    def __init__(
        self,
        engine: TranscriptionEngine,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self._http_client = http_client
        self._timeout = timeout

    async def transcribe(
        self,
        chunk_paths: list[str],
        on_progress: Callable[[int], None] | None = None,
    ) -> TranscriptionResult:
        """Transcribe chunks in order and concatenate their text.

        Args:
            chunk_paths: Chunk files in playback order.
            on_progress: Called with 0-100 after each chunk.

        Returns:
            TranscriptionResult with newline-joined text.

        Raises:
            UnsupportedMediaError: Before any request, if a chunk type is unsupported.
            EmptyTranscriptionError: If no chunk produced text.
        """
        ensure_supported(chunk_paths)

        if self._http_client is not None:
            outputs = await self._transcribe_all(
                self._http_client, chunk_paths, on_progress
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                outputs = await self._transcribe_all(client, chunk_paths, on_progress)

        texts = [o.text.strip() for o in outputs if o.text and o.text.strip()]
        text = "\n".join(texts)
        if not text:
            raise EmptyTranscriptionError(
                f"Provider returned no text for {len(chunk_paths)} chunk(s)"
            )

        title = summary = None
        if len(outputs) == 1:
            title, summary = outputs[0].title, outputs[0].summary

        return TranscriptionResult(
            text=text,
            source=self.engine.source,
            chunk_count=len(chunk_paths),
            title=title,
            summary=summary,
        )

    async def _transcribe_all(
        self,
        client: httpx.AsyncClient,
        chunk_paths: list[str],
        on_progress: Callable[[int], None] | None,
    ) -> list[ChunkTranscript]:
        outputs: list[ChunkTranscript] = []
        total = len(chunk_paths)
        for index, path in enumerate(chunk_paths, start=1):
            logger.info("Transcribing chunk %d/%d", index, total)
            outputs.append(await self.engine.transcribe_file(client, path))
            if on_progress is not None:
                on_progress(int(index * 100 / total))
        return outputs
