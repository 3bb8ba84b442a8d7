"""Durable channel -> agent session mapping.

Two tables:

- ``sessions``: the active session per channel (last writer wins).
- ``saved_sessions``: labeled snapshots a user can restore later. Restoring
  moves the snapshot back to ``sessions`` and deletes it.

Every public method runs in a single SQLite transaction, so callers on the
event loop never observe a half-applied write.
"""

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from cordbridge.utils.helpers import ensure_dir, timestamp

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    channel_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    project_name TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS saved_sessions (
    channel_id TEXT NOT NULL,
    label TEXT NOT NULL,
    session_id TEXT NOT NULL,
    project_name TEXT NOT NULL,
    saved_at TEXT NOT NULL,
    PRIMARY KEY (channel_id, label)
);
"""


@dataclass(frozen=True)
class SessionRecord:
    """An active session bound to a channel."""
    channel_id: str
    session_id: str
    project_name: str
    updated_at: str


@dataclass(frozen=True)
class SavedSession:
    """A labeled snapshot of a channel's session."""
    channel_id: str
    label: str
    session_id: str
    project_name: str
    saved_at: str


class SessionStore:
    """SQLite-backed session store. Pass ``":memory:"`` for tests."""

    def __init__(self, db_path: Path | str):
        if str(db_path) != ":memory:":
            ensure_dir(Path(db_path).expanduser().parent)
            db_path = Path(db_path).expanduser()
        # The diagnostics API may touch the store from its own thread
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)
        logger.debug(f"Session store opened at {db_path}")

    def get(self, channel_id: str) -> str | None:
        """Return the active session id for a channel, if any."""
        row = self._conn.execute(
            "SELECT session_id FROM sessions WHERE channel_id = ?",
            (channel_id,),
        ).fetchone()
        return row["session_id"] if row else None

    def get_record(self, channel_id: str) -> SessionRecord | None:
        row = self._conn.execute(
            "SELECT channel_id, session_id, project_name, updated_at "
            "FROM sessions WHERE channel_id = ?",
            (channel_id,),
        ).fetchone()
        return _to_record(row) if row else None

    def set(self, channel_id: str, session_id: str, project_name: str) -> None:
        """Upsert the active session for a channel."""
        with self._conn:
            self._upsert(channel_id, session_id, project_name)

    def clear(self, channel_id: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM sessions WHERE channel_id = ?", (channel_id,))

    def get_all(self) -> list[SessionRecord]:
        """All active sessions, for diagnostics and export."""
        rows = self._conn.execute(
            "SELECT channel_id, session_id, project_name, updated_at "
            "FROM sessions ORDER BY updated_at DESC"
        ).fetchall()
        return [_to_record(row) for row in rows]

    def save(self, channel_id: str, label: str) -> bool:
        """Copy the active session under ``label``. False if nothing is active."""
        with self._conn:
            row = self._conn.execute(
                "SELECT session_id, project_name FROM sessions WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
            if not row:
                return False
            self._conn.execute(
                "INSERT OR REPLACE INTO saved_sessions "
                "(channel_id, label, session_id, project_name, saved_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (channel_id, label, row["session_id"], row["project_name"], timestamp()),
            )
        return True

    def list_saved(self, channel_id: str) -> list[SavedSession]:
        """Saved sessions for a channel, most recent first."""
        rows = self._conn.execute(
            "SELECT channel_id, label, session_id, project_name, saved_at "
            "FROM saved_sessions WHERE channel_id = ? "
            "ORDER BY saved_at DESC, rowid DESC",
            (channel_id,),
        ).fetchall()
        return [_to_saved(row) for row in rows]

    def list_all_saved(self) -> list[SavedSession]:
        """Every saved session, including those of channels with no active one."""
        rows = self._conn.execute(
            "SELECT channel_id, label, session_id, project_name, saved_at "
            "FROM saved_sessions ORDER BY channel_id, saved_at DESC, rowid DESC"
        ).fetchall()
        return [_to_saved(row) for row in rows]

    def restore(self, channel_id: str, label: str) -> bool:
        """Make a saved session active and remove it from the saved set."""
        with self._conn:
            row = self._conn.execute(
                "SELECT session_id, project_name FROM saved_sessions "
                "WHERE channel_id = ? AND label = ?",
                (channel_id, label),
            ).fetchone()
            if not row:
                return False
            self._upsert(channel_id, row["session_id"], row["project_name"])
            self._conn.execute(
                "DELETE FROM saved_sessions WHERE channel_id = ? AND label = ?",
                (channel_id, label),
            )
        return True

    def close(self) -> None:
        self._conn.close()

    def _upsert(self, channel_id: str, session_id: str, project_name: str) -> None:
        self._conn.execute(
            """
            INSERT INTO sessions (channel_id, session_id, project_name, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET
                session_id = excluded.session_id,
                project_name = excluded.project_name,
                updated_at = excluded.updated_at
            """,
            (channel_id, session_id, project_name, timestamp()),
        )


def _to_record(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        channel_id=row["channel_id"],
        session_id=row["session_id"],
        project_name=row["project_name"],
        updated_at=row["updated_at"],
    )


def _to_saved(row: sqlite3.Row) -> SavedSession:
    return SavedSession(
        channel_id=row["channel_id"],
        label=row["label"],
        session_id=row["session_id"],
        project_name=row["project_name"],
        saved_at=row["saved_at"],
    )
