"""Voice note transcription and summarization pipeline."""

__version__ = "0.1.0"
