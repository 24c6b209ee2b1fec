"""Zip export of a session with its text, metadata, audio and images."""

from __future__ import annotations

import json
import logging
import zipfile
from pathlib import Path

from note_processor.storage.artifacts import ArtifactStore
from note_processor.storage.session_store import SessionStore
from note_processor.utils.errors import PipelineError

logger = logging.getLogger(__name__)


def export_session_zip(
    store: SessionStore,
    artifacts: ArtifactStore,
    session_id: str,
    output_dir: str | Path,
) -> Path:
    """Write <output_dir>/<session_id>.zip for a session.

    Text entries are written only when non-blank. Audio and images that
    cannot be read are left out with a warning.

    Returns:
        Path of the written archive.

    Raises:
        KeyError: If the session does not exist.
    """
    session = store.get(session_id)
    if session is None:
        raise KeyError(f"no session {session_id}")

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    zip_path = out_dir / f"{session_id}.zip"

    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for entry, text in (
            ("note.txt", session.note),
            ("transcript.txt", session.transcript),
            ("summary.txt", session.summary),
        ):
            if text and text.strip():
                zf.writestr(entry, text)

        meta = {
            "sessionId": session.session_id,
            "time": session.time,
            "location": session.location,
            "people": session.people,
            "hashtags": session.hashtags,
            "audioUri": session.audio_uri,
        }
        if session.title:
            meta["title"] = session.title
        if session.summary_tags:
            meta["tags"] = session.summary_tags
        zf.writestr("metadata.json", json.dumps(meta, ensure_ascii=False, indent=2))

        if session.audio_uri:
            ext = ArtifactStore.extension(session.audio_uri) or ".m4a"
            _add_artifact(zf, artifacts, session.audio_uri, f"audio{ext}")

        for index, image_uri in enumerate(store.list_images(session_id)):
            _add_artifact(zf, artifacts, image_uri, f"img-{index}.jpg")

    logger.info("Exported session to %s", zip_path, extra={"session_id": session_id})
    return zip_path


def _add_artifact(
    zf: zipfile.ZipFile, artifacts: ArtifactStore, ref: str, entry: str
) -> None:
    try:
        data = artifacts.fetch(ref)
    except PipelineError as exc:
        logger.warning("Skipping %s in export: %s", entry, exc)
        return
    zf.writestr(entry, data)
