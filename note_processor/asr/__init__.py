"""Speech-to-text clients."""

from note_processor.asr.client import TranscriptionClient
from note_processor.asr.registry import get_transcription_engine

__all__ = ["TranscriptionClient", "get_transcription_engine"]
