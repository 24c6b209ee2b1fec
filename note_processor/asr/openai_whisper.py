"""OpenAI-compatible speech-to-text engine.

One synchronous request per file against /v1/audio/transcriptions.
"""

import logging
import os

import httpx

from note_processor.asr.interface import ChunkTranscript, TranscriptionEngine
from note_processor.asr.media import media_type_for
from note_processor.utils.errors import (
    AudioNotFoundError,
    ConfigurationError,
    TransportError,
    UnsupportedMediaError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MODEL = "whisper-1"


class OpenAIWhisperEngine(TranscriptionEngine):
    """Whisper transcription over the OpenAI audio API.

    Reads configuration from environment variables:
        OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_WHISPER_MODEL
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self._base_url = (
            base_url or os.environ.get("OPENAI_BASE_URL", "") or DEFAULT_BASE_URL
        ).rstrip("/")
        self._model = (
            model or os.environ.get("OPENAI_WHISPER_MODEL", "") or DEFAULT_MODEL
        )

    @property
    def source(self) -> str:
        return f"openai:{self._model}"

    async def transcribe_file(
        self, client: httpx.AsyncClient, audio_path: str
    ) -> ChunkTranscript:
        """Transcribe one file.

        Raises:
            ConfigurationError: If no API key is configured.
            UnsupportedMediaError: If the provider rejects the format.
            TransportError: On network failure or error status.
        """
        if not self._api_key:
            raise ConfigurationError("openai_api_key_missing")

        mime = media_type_for(audio_path)
        url = f"{self._base_url}/v1/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            with open(audio_path, "rb") as audio_file:
                files = {"file": (os.path.basename(audio_path), audio_file, mime)}
                data = {"model": self._model}
                response = await client.post(
                    url, headers=headers, files=files, data=data
                )
        except OSError as exc:
            raise AudioNotFoundError(f"Chunk unreadable: {exc}", ref=audio_path) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Failed to reach OpenAI: {exc}", provider="openai"
            ) from exc

        if response.status_code == 415:
            raise UnsupportedMediaError(
                f"OpenAI rejected media type {mime}", path=audio_path
            )
        if response.status_code != 200:
            raise TransportError(
                f"openai_http_{response.status_code}: {response.text}",
                status_code=response.status_code,
                provider="openai",
            )

        try:
            body = response.json()
        except ValueError:
            return ChunkTranscript(text=response.text)
        if not isinstance(body, dict):
            return ChunkTranscript(text=response.text)
        text = body.get("text")
        if text is None:
            text = body.get("transcript", "")
        return ChunkTranscript(text=str(text or ""))
