"""Audio media types accepted by the transcription providers."""

import os

from note_processor.utils.errors import UnsupportedMediaError

SUPPORTED_MEDIA_TYPES: dict[str, str] = {
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".wav": "audio/wav",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
}


def media_type_for(path: str) -> str:
    """Return the MIME type for an audio path.

    Raises:
        UnsupportedMediaError: If the extension is not a supported audio type.
    """
    ext = os.path.splitext(path)[1].lower()
    mime = SUPPORTED_MEDIA_TYPES.get(ext)
    if mime is None:
        raise UnsupportedMediaError(
            f"Unsupported audio type '{ext or '<none>'}' for {os.path.basename(path)}",
            path=path,
        )
    return mime


def ensure_supported(paths: list[str]) -> None:
    """Reject the whole batch if any path has an unsupported type."""
    for path in paths:
        media_type_for(path)
