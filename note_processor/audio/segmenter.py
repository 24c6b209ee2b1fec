"""Audio segmenter: size-bounded chunks for the transcription provider.

Audio that already fits the provider's upload limit is passed through
untouched. Anything larger is transcoded with ffmpeg to a compact mono
16kHz 48kbps MP3 and split into fixed-duration, independently decodable
segments.
"""

import glob
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from note_processor.utils.errors import TranscodeError

MAX_CHUNK_BYTES = 24 * 1024 * 1024
TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
TARGET_BITRATE = "48k"
SEGMENT_SECONDS = 600

FFPROBE_TIMEOUT_SECONDS = 10
FFMPEG_TIMEOUT_SECONDS = 1800

SEGMENT_PATTERN = "part_%03d.mp3"


@dataclass
class TranscodeResult:
    """Result of a successful transcode operation."""

    input_path: str
    output_path: str
    input_size_bytes: int
    output_size_bytes: int


def _check_ffmpeg_available() -> str:
    """Verify ffmpeg is available on the system.

    Returns:
        Path to the ffmpeg binary.

    Raises:
        TranscodeError: If ffmpeg is not found.
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise TranscodeError("ffmpeg binary not found on PATH")
    return ffmpeg_path


def _check_audio_valid(input_path: str) -> None:
    """Pre-validate audio file with ffprobe before transcoding.

    Runs ffprobe with a short timeout to detect corrupt files quickly
    instead of waiting for the much longer ffmpeg timeout.

    Args:
        input_path: Path to the audio file to validate.

    Raises:
        TranscodeError: If ffprobe fails or the file is corrupt.
    """
    ffprobe_path = shutil.which("ffprobe")
    if ffprobe_path is None:
        # No ffprobe; ffmpeg reports corrupt input itself
        return

    cmd = [
        ffprobe_path,
        "-v", "error",
        "-show_format",
        input_path,
    ]

    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "unknown error"
        raise TranscodeError(
            f"Audio file is corrupt or unreadable (ffprobe): {stderr}",
            input_path=input_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise TranscodeError(
            f"ffprobe timed out after {FFPROBE_TIMEOUT_SECONDS}s, file may be corrupt",
            input_path=input_path,
        ) from exc


def _run_ffmpeg(cmd: list[str], input_path: str, action: str) -> None:
    """Run an ffmpeg command, converting failures to TranscodeError."""
    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=FFMPEG_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "unknown error"
        raise TranscodeError(
            f"ffmpeg {action} failed: {stderr}",
            input_path=input_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        stderr_snippet = ""
        if exc.stderr:
            stderr = exc.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            stderr_snippet = f" stderr: {stderr.strip()[:200]}"
        raise TranscodeError(
            f"ffmpeg {action} timed out after {FFMPEG_TIMEOUT_SECONDS} seconds."
            f"{stderr_snippet}",
            input_path=input_path,
        ) from exc


def transcode_to_mp3(
    input_path: str,
    output_dir: str,
    output_filename: str | None = None,
) -> TranscodeResult:
    """Transcode an audio file to mono 16kHz 48kbps MP3.

    Args:
        input_path: Path to the input audio file.
        output_dir: Directory to write the output MP3 file.
        output_filename: Optional output filename. Defaults to input stem + .mp3.

    Returns:
        TranscodeResult with paths and sizes.

    Raises:
        TranscodeError: If the input file doesn't exist, is corrupt, or ffmpeg fails.
    """
    input_file = Path(input_path)

    if not input_file.exists():
        raise TranscodeError(
            f"Input file does not exist: {input_path}",
            input_path=input_path,
        )

    ffmpeg_path = _check_ffmpeg_available()
    _check_audio_valid(input_path)

    if output_filename is None:
        output_filename = f"{input_file.stem}.mp3"

    output_path = os.path.join(output_dir, output_filename)
    os.makedirs(output_dir, exist_ok=True)

    cmd = [
        ffmpeg_path,
        "-y",
        "-i",
        input_path,
        "-vn",
        "-ac",
        str(TARGET_CHANNELS),
        "-ar",
        str(TARGET_SAMPLE_RATE),
        "-c:a",
        "libmp3lame",
        "-b:a",
        TARGET_BITRATE,
        output_path,
    ]
    _run_ffmpeg(cmd, input_path, "transcode")

    if not os.path.exists(output_path):
        raise TranscodeError(
            f"ffmpeg produced no output file: {output_path}",
            input_path=input_path,
        )

    return TranscodeResult(
        input_path=input_path,
        output_path=output_path,
        input_size_bytes=input_file.stat().st_size,
        output_size_bytes=os.path.getsize(output_path),
    )


def split_segments(
    input_path: str,
    output_dir: str,
    segment_seconds: int = SEGMENT_SECONDS,
) -> list[str]:
    """Split an MP3 file into fixed-duration segments.

    Timestamps are reset at every boundary so each segment decodes on
    its own. Audio is stream-copied, not re-encoded.

    Returns:
        Segment paths in playback order.

    Raises:
        TranscodeError: If ffmpeg fails.
    """
    ffmpeg_path = _check_ffmpeg_available()
    os.makedirs(output_dir, exist_ok=True)

    cmd = [
        ffmpeg_path,
        "-y",
        "-i",
        input_path,
        "-f",
        "segment",
        "-segment_time",
        str(segment_seconds),
        "-reset_timestamps",
        "1",
        "-c",
        "copy",
        os.path.join(output_dir, SEGMENT_PATTERN),
    ]
    _run_ffmpeg(cmd, input_path, "segment")

    return sorted(glob.glob(os.path.join(output_dir, "part_*.mp3")))


def prepare(
    audio: bytes,
    work_dir: str,
    filename: str = "audio.m4a",
    max_chunk_bytes: int = MAX_CHUNK_BYTES,
) -> list[str]:
    """Turn an audio blob into upload-ready chunk files.

    Args:
        audio: Raw audio content.
        work_dir: Scratch directory owned by the caller.
        filename: Name for the source file; its extension is kept.
        max_chunk_bytes: Largest chunk the provider accepts.

    Returns:
        Non-empty list of chunk paths in playback order. When the input
        already fits, the only element is the unmodified source file.

    Raises:
        TranscodeError: If transcoding or splitting fails.
    """
    os.makedirs(work_dir, exist_ok=True)
    source_path = os.path.join(work_dir, os.path.basename(filename) or "audio.m4a")
    with open(source_path, "wb") as f:
        f.write(audio)

    if len(audio) <= max_chunk_bytes:
        return [source_path]

    transcoded = transcode_to_mp3(
        source_path, work_dir, output_filename="transcoded.mp3"
    )
    segments_dir = os.path.join(work_dir, "segments")
    segments = split_segments(transcoded.output_path, segments_dir)

    chunks = [p for p in segments if os.path.getsize(p) <= max_chunk_bytes]
    if not chunks:
        return [transcoded.output_path]
    return chunks
