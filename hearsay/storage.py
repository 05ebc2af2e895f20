"""SQLite backed persistence for audio clips and their transcripts."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .config import APP_DIR
from .models import AudioRecord, AudioUnit, RecentEntry, TranscriptionRecord

DB_PATH = APP_DIR / "hearsay.db"
SCHEMA_VERSION = 1
RECENT_LIMIT = 10
RECENT_KEY = "recent_files"


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class NotFoundError(StorageError):
    """Raised when a key that should exist is missing."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Storage:
    """Keyed storage for audio content and transcripts.

    Audio rows and transcript rows are linked by ``audio_id`` only; the link is
    a lookup key backed by an index, not a foreign key. Every public method
    runs in its own transaction. ``delete_audio`` is the one multi-step
    operation: it removes transcripts first and the audio row second, as two
    separate commits.
    """

    def __init__(self, db_path: Path = DB_PATH, strict_references: bool = False) -> None:
        self.db_path = db_path
        self.strict_references = strict_references
        self._ensure_initialised()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"Storage operation failed: {exc}") from exc
        finally:
            conn.close()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audio_files (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    content BLOB NOT NULL,
                    duration_seconds REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transcriptions (
                    id TEXT PRIMARY KEY,
                    audio_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    transcript_text TEXT NOT NULL,
                    summary_text TEXT,
                    model_used TEXT NOT NULL,
                    language_code TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transcriptions_audio_id ON transcriptions(audio_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audio_files_created_at ON audio_files(created_at)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            cur = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",))
            row = cur.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO metadata(key, value) VALUES(?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )

    # Audio -----------------------------------------------------------------

    def save_audio(self, audio: Union[AudioUnit, AudioRecord]) -> str:
        """Persist ``audio`` under a fresh id and return the id."""

        audio_id = _new_id()
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audio_files(id, name, mime_type, content, duration_seconds, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    audio_id,
                    audio.name,
                    audio.mime_type,
                    sqlite3.Binary(audio.content),
                    max(0.0, float(audio.duration_seconds or 0.0)),
                    now.isoformat(),
                ),
            )
            recent = _read_recent(conn)
            recent.insert(0, RecentEntry(id=audio_id, name=audio.name, timestamp=now))
            _write_recent(conn, recent[:RECENT_LIMIT])
        return audio_id

    def get_audio(self, audio_id: str) -> AudioRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM audio_files WHERE id = ?", (audio_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Audio file with id {audio_id} not found")
        return _row_to_audio(row)

    def delete_audio(self, audio_id: str) -> bool:
        """Delete an audio record and every transcript that references it.

        Returns ``True`` when an audio row was removed.
        """

        with self._connect() as conn:
            cur = conn.execute("SELECT id FROM transcriptions WHERE audio_id = ?", (audio_id,))
            for row in cur.fetchall():
                conn.execute("DELETE FROM transcriptions WHERE id = ?", (row["id"],))

        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM audio_files WHERE id = ?", (audio_id,)).rowcount
            recent = [entry for entry in _read_recent(conn) if entry.id != audio_id]
            _write_recent(conn, recent)
        return deleted > 0

    def get_recent(self) -> List[RecentEntry]:
        with self._connect() as conn:
            return _read_recent(conn)[:RECENT_LIMIT]

    # Transcripts -----------------------------------------------------------

    def save_transcript(
        self,
        audio_id: str,
        file_name: str,
        transcript_text: str,
        model_used: str,
        language_code: str,
        summary_text: Optional[str] = None,
    ) -> str:
        transcript_id = _new_id()
        with self._connect() as conn:
            if self.strict_references:
                exists = conn.execute("SELECT 1 FROM audio_files WHERE id = ?", (audio_id,)).fetchone()
                if exists is None:
                    raise NotFoundError(f"Audio file with id {audio_id} not found")
            conn.execute(
                """
                INSERT INTO transcriptions(
                    id, audio_id, file_name, transcript_text, summary_text, model_used, language_code, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transcript_id,
                    audio_id,
                    file_name,
                    transcript_text,
                    summary_text,
                    model_used,
                    language_code,
                    _now().isoformat(),
                ),
            )
        return transcript_id

    def get_transcript(self, transcript_id: str) -> TranscriptionRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM transcriptions WHERE id = ?", (transcript_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Transcript with id {transcript_id} not found")
        return _row_to_transcript(row)

    def get_transcript_by_audio_id(self, audio_id: str) -> Optional[TranscriptionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM transcriptions WHERE audio_id = ? ORDER BY created_at, rowid LIMIT 1",
                (audio_id,),
            ).fetchone()
        return _row_to_transcript(row) if row is not None else None

    def list_transcripts_for_audio(self, audio_id: str) -> List[TranscriptionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM transcriptions WHERE audio_id = ? ORDER BY created_at, rowid",
                (audio_id,),
            ).fetchall()
        return [_row_to_transcript(row) for row in rows]

    def list_transcripts(self) -> Iterator[TranscriptionRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM transcriptions ORDER BY created_at DESC, rowid DESC").fetchall()
        for row in rows:
            yield _row_to_transcript(row)


def _read_recent(conn: sqlite3.Connection) -> List[RecentEntry]:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (RECENT_KEY,)).fetchone()
    if row is None:
        return []
    try:
        payload = json.loads(row["value"])
    except json.JSONDecodeError:
        return []
    return [
        RecentEntry(id=item["id"], name=item["name"], timestamp=datetime.fromisoformat(item["timestamp"]))
        for item in payload
    ]


def _write_recent(conn: sqlite3.Connection, entries: List[RecentEntry]) -> None:
    payload = [{"id": e.id, "name": e.name, "timestamp": e.timestamp.isoformat()} for e in entries]
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (RECENT_KEY, json.dumps(payload)),
    )


def _row_to_audio(row: sqlite3.Row) -> AudioRecord:
    return AudioRecord(
        id=row["id"],
        name=row["name"],
        mime_type=row["mime_type"],
        content=bytes(row["content"]),
        duration_seconds=row["duration_seconds"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_transcript(row: sqlite3.Row) -> TranscriptionRecord:
    return TranscriptionRecord(
        id=row["id"],
        audio_id=row["audio_id"],
        file_name=row["file_name"],
        transcript_text=row["transcript_text"],
        summary_text=row["summary_text"],
        model_used=row["model_used"],
        language_code=row["language_code"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
