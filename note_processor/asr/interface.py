"""Abstract transcription engine interface.

Defines the TranscriptionEngine ABC and the result data models.
Concrete implementations (OpenAI Whisper, the notes backend) subclass
TranscriptionEngine and transcribe one file per call.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx


@dataclass
class ChunkTranscript:
    """Provider output for a single audio chunk."""

    text: str
    title: str | None = None
    summary: str | None = None


@dataclass
class TranscriptionResult:
    """Concatenated transcript for a whole recording."""

    text: str
    source: str
    chunk_count: int
    title: str | None = None
    summary: str | None = None


class TranscriptionEngine(ABC):
    """Abstract base class for transcription engine implementations.

    Subclasses must implement the source property and transcribe_file().
    """

    @property
    @abstractmethod
    def source(self) -> str:
        """Return the tag recorded as the transcript's source."""

    @abstractmethod
    async def transcribe_file(
        self, client: httpx.AsyncClient, audio_path: str
    ) -> ChunkTranscript:
        """Transcribe one audio file.

        Args:
            client: Shared HTTP client for this transcription run.
            audio_path: Path to a provider-size-compliant audio file.

        Returns:
            ChunkTranscript with the recognized text.
        """
