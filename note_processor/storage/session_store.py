"""SQLite-backed store for recording sessions.

The sessions table is the system of record for the transcription and
summary state machines. Every mutation is one UPDATE (or upsert) keyed by
session_id, so concurrent writers never interleave a read-modify-write.

State machines:
    audio_state:   none -> transcribing -> done | none (error or retry)
    summary_state: none -> waiting_network -> done
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from note_processor.storage.sqlite import SqliteDatabase
from note_processor.utils.errors import StorageError

logger = logging.getLogger(__name__)

SESSION_ID_FORMAT = "%Y%m%d%H%M%S"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    time TEXT,
    location TEXT,
    people TEXT,
    hashtags TEXT,
    note TEXT,
    audio_uri TEXT,
    transcript TEXT,
    transcribe_source TEXT,
    transcribe_error TEXT,
    audio_state TEXT NOT NULL DEFAULT 'none',
    summary TEXT,
    title TEXT,
    summary_tags TEXT,
    summary_error TEXT,
    summary_state TEXT NOT NULL DEFAULT 'none',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    image_uri TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_images_session ON images(session_id);
"""

_ORDER_BY = (
    "ORDER BY CASE WHEN time IS NULL THEN 1 ELSE 0 END, time DESC, created_at DESC"
)


class AudioState(str, Enum):
    NONE = "none"
    TRANSCRIBING = "transcribing"
    DONE = "done"


class SummaryState(str, Enum):
    NONE = "none"
    WAITING_NETWORK = "waiting_network"
    DONE = "done"


def _load_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except ValueError:
        logger.warning("Discarding malformed list column: %r", value)
        return []
    return [str(v) for v in data] if isinstance(data, list) else []


def _dump_list(value: list[str] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(list(value), ensure_ascii=False)


@dataclass
class Session:
    """One recording and its pipeline state."""

    session_id: str
    created_at: str
    updated_at: str
    time: str | None = None
    location: str | None = None
    people: list[str] = field(default_factory=list)
    hashtags: list[str] = field(default_factory=list)
    note: str | None = None
    audio_uri: str | None = None
    transcript: str | None = None
    transcribe_source: str | None = None
    transcribe_error: str | None = None
    audio_state: AudioState = AudioState.NONE
    summary: str | None = None
    title: str | None = None
    summary_tags: list[str] = field(default_factory=list)
    summary_error: str | None = None
    summary_state: SummaryState = SummaryState.NONE

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Session:
        return cls(
            session_id=row["session_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            time=row["time"],
            location=row["location"],
            people=_load_list(row["people"]),
            hashtags=_load_list(row["hashtags"]),
            note=row["note"],
            audio_uri=row["audio_uri"],
            transcript=row["transcript"],
            transcribe_source=row["transcribe_source"],
            transcribe_error=row["transcribe_error"],
            audio_state=AudioState(row["audio_state"]),
            summary=row["summary"],
            title=row["title"],
            summary_tags=_load_list(row["summary_tags"]),
            summary_error=row["summary_error"],
            summary_state=SummaryState(row["summary_state"]),
        )

    @property
    def status_label(self) -> str:
        """Human-readable transcription status."""
        if not self.audio_uri:
            return "no audio"
        if self.audio_state is AudioState.TRANSCRIBING:
            return "transcribing"
        if self.audio_state is AudioState.DONE:
            return "done"
        if self.transcribe_error:
            return f"failed: {self.transcribe_error}"
        return "pending"

    def metadata(self) -> dict[str, Any]:
        """User metadata passed along to summarization and export."""
        return {
            "sessionId": self.session_id,
            "time": self.time,
            "location": self.location,
            "people": self.people,
            "hashtags": self.hashtags,
        }


class SessionStore:
    """Session table access.

    Args:
        db_path: SQLite database file.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = SqliteDatabase(db_path, SCHEMA_SQL)
        self._clock = clock or (lambda: datetime.now(UTC))

    def _now(self) -> str:
        return self._clock().isoformat()

    def new_session_id(self, ts: datetime | None = None) -> str:
        """Format a session id (YYYYMMDDHHMMSS) from ts or the current time."""
        return (ts or self._clock()).strftime(SESSION_ID_FORMAT)

    def create_or_update(
        self,
        session_id: str,
        *,
        time: str | None = None,
        location: str | None = None,
        people: list[str] | None = None,
        hashtags: list[str] | None = None,
        note: str | None = None,
        audio_uri: str | None = None,
    ) -> Session:
        """Insert a session or update its metadata.

        Fields passed as None keep their stored value. A new row starts
        with audio_state and summary_state 'none'; created_at is only
        written on insert.
        """
        now = self._now()
        self.db.execute(
            """
            INSERT INTO sessions (
                session_id, time, location, people, hashtags, note, audio_uri,
                audio_state, summary_state, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'none', 'none', ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                time = COALESCE(excluded.time, sessions.time),
                location = COALESCE(excluded.location, sessions.location),
                people = COALESCE(excluded.people, sessions.people),
                hashtags = COALESCE(excluded.hashtags, sessions.hashtags),
                note = COALESCE(excluded.note, sessions.note),
                audio_uri = COALESCE(excluded.audio_uri, sessions.audio_uri),
                updated_at = excluded.updated_at
            """,
            (
                session_id,
                time,
                location,
                _dump_list(people),
                _dump_list(hashtags),
                note,
                audio_uri,
                now,
                now,
            ),
        )
        session = self.get(session_id)
        if session is None:
            raise StorageError(
                f"Session {session_id} missing after upsert",
                session_id=session_id,
                operation="create_or_update",
            )
        return session

    def get(self, session_id: str) -> Session | None:
        row = self.db.fetchone(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        )
        return Session.from_row(row) if row else None

    def list_all(self) -> list[Session]:
        rows = self.db.fetchall(f"SELECT * FROM sessions {_ORDER_BY}")
        return [Session.from_row(r) for r in rows]

    def search(
        self, query: str = "", person: str = "", hashtag: str = ""
    ) -> list[Session]:
        """Substring search over note/transcript/summary/title, people and hashtags.

        Empty filters match everything.
        """
        rows = self.db.fetchall(
            f"""
            SELECT * FROM sessions WHERE
                (:q = '' OR note LIKE '%' || :q || '%'
                    OR transcript LIKE '%' || :q || '%'
                    OR summary LIKE '%' || :q || '%'
                    OR title LIKE '%' || :q || '%')
                AND (:p = '' OR people LIKE '%' || :p || '%')
                AND (:h = '' OR hashtags LIKE '%' || :h || '%')
            {_ORDER_BY}
            """,
            {"q": query or "", "p": person or "", "h": hashtag or ""},
        )
        return [Session.from_row(r) for r in rows]

    def set_transcribing(self, session_id: str) -> None:
        self.db.execute(
            "UPDATE sessions SET audio_state = 'transcribing', transcript = NULL, "
            "transcribe_error = NULL, updated_at = ? WHERE session_id = ?",
            (self._now(), session_id),
        )

    def set_transcript(self, session_id: str, text: str, source: str) -> None:
        """Record a completed transcript and clear any previous error.

        Raises:
            ValueError: If text is blank; a done session always has text.
        """
        if not text or not text.strip():
            raise ValueError("transcript must be non-empty")
        self.db.execute(
            "UPDATE sessions SET transcript = ?, transcribe_source = ?, "
            "transcribe_error = NULL, audio_state = 'done', updated_at = ? "
            "WHERE session_id = ?",
            (text, source, self._now(), session_id),
        )

    def set_transcribe_error(
        self, session_id: str, error: str, source: str = "error"
    ) -> None:
        self.db.execute(
            "UPDATE sessions SET transcribe_error = ?, transcribe_source = ?, "
            "transcript = NULL, audio_state = 'none', updated_at = ? "
            "WHERE session_id = ?",
            (error, source, self._now(), session_id),
        )

    def reset_transcribing(self, session_id: str) -> None:
        """Return an in-flight session to 'none' without recording an error."""
        self.db.execute(
            "UPDATE sessions SET audio_state = 'none', updated_at = ? "
            "WHERE session_id = ? AND audio_state = 'transcribing'",
            (self._now(), session_id),
        )

    def set_summary(
        self,
        session_id: str,
        summary: str,
        title: str | None = None,
        tags: list[str] | None = None,
    ) -> None:
        """Record a summary. A None title or tags keeps the stored value."""
        self.db.execute(
            "UPDATE sessions SET summary = ?, title = COALESCE(?, title), "
            "summary_tags = COALESCE(?, summary_tags), summary_error = NULL, "
            "summary_state = 'done', updated_at = ? WHERE session_id = ?",
            (summary, title, _dump_list(tags), self._now(), session_id),
        )

    def set_summary_error(
        self, session_id: str, error: str, retryable: bool = True
    ) -> None:
        state = SummaryState.WAITING_NETWORK if retryable else SummaryState.DONE
        self.db.execute(
            "UPDATE sessions SET summary_error = ?, summary_state = ?, "
            "updated_at = ? WHERE session_id = ?",
            (error, state.value, self._now(), session_id),
        )

    def set_summary_waiting(self, session_id: str) -> None:
        self.db.execute(
            "UPDATE sessions SET summary_state = 'waiting_network', updated_at = ? "
            "WHERE session_id = ?",
            (self._now(), session_id),
        )

    def list_pending_transcription(self) -> list[Session]:
        """Sessions with audio but no transcript, no error, and not done."""
        rows = self.db.fetchall(
            "SELECT * FROM sessions WHERE audio_uri IS NOT NULL AND audio_uri != '' "
            "AND (transcript IS NULL OR transcript = '') "
            "AND (transcribe_error IS NULL OR transcribe_error = '') "
            "AND audio_state != 'done' ORDER BY created_at ASC"
        )
        return [Session.from_row(r) for r in rows]

    def list_pending_summary(self) -> list[Session]:
        rows = self.db.fetchall(
            "SELECT * FROM sessions WHERE audio_state = 'done' "
            "AND summary_state = 'waiting_network' ORDER BY created_at ASC"
        )
        return [Session.from_row(r) for r in rows]

    def add_image(self, session_id: str, image_uri: str) -> None:
        self.db.execute(
            "INSERT INTO images (session_id, image_uri, created_at) VALUES (?, ?, ?)",
            (session_id, image_uri, self._now()),
        )

    def list_images(self, session_id: str) -> list[str]:
        rows = self.db.fetchall(
            "SELECT image_uri FROM images WHERE session_id = ? "
            "ORDER BY created_at ASC, id ASC",
            (session_id,),
        )
        return [r["image_uri"] for r in rows]
