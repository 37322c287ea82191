"""SQLite Database Storage Module for Session Recorder.

This module provides the local relational store for recording sessions, the
screenshots captured into them, and the time-range comments users attach to
them. It manages SQLite connections, applies schema migrations, and exposes
CRUD helpers used by the daemon, the migration engine, the submission
pipeline and the sync engine.

The database schema stores:
- sessions: one row per recording activity with its approval lifecycle
- recordings: one row per captured screenshot, with window context and either
  a legacy inline image payload or a File Store path
- comments: user annotations over a [start_time, end_time] range in seconds

Key Features:
- Versioned schema migrations applied exactly once at startup
- Context manager for connection handling
- Enumerated columns constrained with CHECK constraints
- Session listings that hide sessions without any recordings

Database Schema:
    sessions table:
        - id: Primary key (autoincrement, or remote id when synced)
        - created_at: ISO 8601 creation time
        - duration: Accumulated duration in whole seconds
        - approval_state: draft | submitted | approved | rejected
        - session_status: passive | tasked
        - task_id, reward_id: Optional references
    recordings table:
        - id, session_id, timestamp, window_name, window_id
        - thumbnail, screenshot: Legacy inline data URLs (blank once migrated)
        - screenshot_path: File Store path (schema v2)
        - type: passive | tasked
        - label: Optional free text
    comments table:
        - id, session_id, start_time, end_time, comment, created_at

Example:
    >>> storage = RecordingStorage()
    >>> session_id = storage.create_session("passive")
    >>> recording_id = storage.create_recording(
    ...     session_id, "2025-01-01T10:00:00Z", "Firefox", "0x3a00007", "passive"
    ... )
    >>> storage.get_session_recordings(session_id)
"""

import sqlite3
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple
from pathlib import Path
import logging

from .timeline import utc_now_iso

logger = logging.getLogger(__name__)

APPROVAL_STATES = ('draft', 'submitted', 'approved', 'rejected')
SESSION_KINDS = ('passive', 'tasked')

SESSION_COLUMNS = "id, created_at, duration, approval_state, session_status, task_id, reward_id"
RECORDING_COLUMNS = (
    "id, session_id, timestamp, window_name, window_id, thumbnail, screenshot, "
    "screenshot_path, type, label"
)
COMMENT_COLUMNS = "id, session_id, start_time, end_time, comment, created_at"


def _create_base_tables(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            duration INTEGER NOT NULL DEFAULT 0,
            approval_state TEXT NOT NULL DEFAULT 'draft',
            session_status TEXT NOT NULL,
            task_id INTEGER,
            reward_id INTEGER,
            CONSTRAINT valid_approval_state CHECK (approval_state IN ('draft', 'submitted', 'approved', 'rejected')),
            CONSTRAINT valid_session_status CHECK (session_status IN ('passive', 'tasked'))
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS recordings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            window_name TEXT NOT NULL,
            window_id TEXT NOT NULL,
            thumbnail TEXT NOT NULL,
            screenshot TEXT NOT NULL,
            type TEXT NOT NULL,
            label TEXT,
            FOREIGN KEY (session_id) REFERENCES sessions(id),
            CONSTRAINT valid_type CHECK (type IN ('passive', 'tasked'))
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS comments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id INTEGER NOT NULL,
            start_time INTEGER NOT NULL,
            end_time INTEGER NOT NULL,
            comment TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(id)
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_recordings_session ON recordings(session_id, timestamp)
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_comments_session ON comments(session_id, start_time)
    """)


def _add_screenshot_path(conn: sqlite3.Connection) -> None:
    # Databases from builds that checked for this column already have it
    cursor = conn.execute("PRAGMA table_info(recordings)")
    columns = {row[1] for row in cursor.fetchall()}
    if 'screenshot_path' not in columns:
        conn.execute("ALTER TABLE recordings ADD COLUMN screenshot_path TEXT")
        logger.info("Added 'screenshot_path' column to recordings table")


# Ordered schema steps; each runs exactly once per database
MIGRATIONS: List[Tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _create_base_tables),
    (2, _add_screenshot_path),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


class RecordingStorage:
    """SQLite database interface for sessions, recordings and comments.

    The store is single-user: rows carry no user id, and the remote user is
    only known to the submission and sync layers.

    Attributes:
        db_path (str): Absolute path to the SQLite database file

    Example:
        >>> storage = RecordingStorage("/tmp/sessions.sqlite")
        >>> sid = storage.create_session("tasked", task_id=42)
        >>> storage.update_duration(sid, 125)
        >>> storage.get_session(sid)["duration"]
        125
    """

    def __init__(self, db_path: str = None):
        """Initialize RecordingStorage and apply pending schema migrations.

        Args:
            db_path (str, optional): Path to SQLite database file. If None,
                uses ~/session-recorder-data/sessions.sqlite

        Raises:
            RuntimeError: If the data directory or database cannot be created
        """
        if db_path is None:
            data_dir = Path.home() / "session-recorder-data"
            try:
                data_dir.mkdir(exist_ok=True)
            except PermissionError as e:
                raise RuntimeError(f"Permission denied creating data directory {data_dir}: {e}") from e
            db_path = data_dir / "sessions.sqlite"

        self.db_path = str(db_path)
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite database connections.

        Yields:
            sqlite3.Connection: Connection with Row factory enabled

        Raises:
            RuntimeError: If the database file cannot be opened or accessed
        """
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()
        except (sqlite3.OperationalError, PermissionError) as e:
            raise RuntimeError(f"Database access error for {self.db_path}: {e}") from e

    def init_db(self):
        """Bring the schema up to SCHEMA_VERSION.

        Reads the applied version from the schema_version table and runs every
        later step from MIGRATIONS in order, recording each one as it commits.
        """
        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                )
            """)
            current = self.get_schema_version(conn)

            for version, step in MIGRATIONS:
                if version <= current:
                    continue
                step(conn)
                conn.execute("DELETE FROM schema_version")
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
                conn.commit()
                logger.info(f"Applied schema migration v{version}")

    def get_schema_version(self, conn: sqlite3.Connection = None) -> int:
        """Return the applied schema version, 0 for a fresh database."""
        if conn is None:
            with self.get_connection() as own_conn:
                return self.get_schema_version(own_conn)
        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        return row["version"] or 0

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(self, session_status: str, task_id: int = None,
                       created_at: str = None) -> int:
        """Create a draft session with zero duration.

        Args:
            session_status: 'passive' or 'tasked'
            task_id: Optional task reference
            created_at: ISO timestamp, defaults to now

        Returns:
            Database ID of the new session.

        Raises:
            ValueError: If session_status is not a known session kind.
        """
        if session_status not in SESSION_KINDS:
            raise ValueError(f"Invalid session kind: {session_status}")

        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sessions (created_at, session_status, task_id)
                VALUES (?, ?, ?)
                """,
                (created_at or utc_now_iso(), session_status, task_id),
            )
            conn.commit()
            logger.info(f"Created {session_status} session {cursor.lastrowid}")
            return cursor.lastrowid

    def get_session(self, session_id: int) -> Optional[Dict]:
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?",
                (session_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def session_exists(self, session_id: int) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,))
            return cursor.fetchone() is not None

    def list_sessions(self) -> List[Dict]:
        """List sessions that have at least one recording, newest first.

        Sessions without recordings are not listed.
        """
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM sessions s
                WHERE EXISTS (SELECT 1 FROM recordings r WHERE r.session_id = s.id)
                ORDER BY s.created_at DESC, s.id DESC
                """
            )
            return [dict(row) for row in cursor.fetchall()]

    def update_duration(self, session_id: int, duration: int) -> None:
        """Set the session duration to an absolute number of seconds."""
        if duration < 0:
            raise ValueError(f"Duration must be >= 0, got {duration}")
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE sessions SET duration = ? WHERE id = ?",
                (int(duration), session_id),
            )
            conn.commit()

    def submit_for_approval(self, session_id: int) -> None:
        """Mark a session submitted. Performs no validation."""
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE sessions SET approval_state = 'submitted' WHERE id = ?",
                (session_id,),
            )
            conn.commit()

    def upsert_session(self, session: Dict) -> None:
        """Insert a session with an explicit id, or update it if present.

        Used by the sync engine to write rows whose id came from the backend.

        Args:
            session: Dict with id, created_at, duration, approval_state,
                session_status, task_id and reward_id.
        """
        if session.get("approval_state") not in APPROVAL_STATES:
            raise ValueError(f"Invalid approval state: {session.get('approval_state')}")
        if session.get("session_status") not in SESSION_KINDS:
            raise ValueError(f"Invalid session kind: {session.get('session_status')}")

        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, created_at, duration, approval_state,
                                      session_status, task_id, reward_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    duration = excluded.duration,
                    approval_state = excluded.approval_state,
                    task_id = excluded.task_id,
                    reward_id = excluded.reward_id
                """,
                (
                    session["id"],
                    session["created_at"],
                    session.get("duration") or 0,
                    session["approval_state"],
                    session["session_status"],
                    session.get("task_id"),
                    session.get("reward_id"),
                ),
            )
            conn.commit()

    def delete_session(self, session_id: int) -> None:
        """Delete a session with its recordings and comments.

        Files in the File Store are not touched; callers delete the session
        folder separately.
        """
        with self.get_connection() as conn:
            conn.execute("DELETE FROM comments WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM recordings WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            conn.commit()
            logger.info(f"Deleted session {session_id}")

    # =========================================================================
    # Recordings
    # =========================================================================

    def create_recording(self, session_id: int, timestamp: str, window_name: str,
                         window_id: str, recording_type: str, screenshot: str = "",
                         thumbnail: str = "", screenshot_path: str = None,
                         label: str = None) -> int:
        """Insert a recording row.

        Args:
            session_id: Owning session
            timestamp: Capture time as ISO 8601
            window_name: Active window title
            window_id: Window/source identifier
            recording_type: 'passive' or 'tasked', mirroring the session
            screenshot: Legacy inline data URL (empty for file-based rows)
            thumbnail: Legacy inline thumbnail data URL
            screenshot_path: File Store path, if already written
            label: Optional free text

        Returns:
            Database ID of the new recording.
        """
        if recording_type not in SESSION_KINDS:
            raise ValueError(f"Invalid recording type: {recording_type}")

        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO recordings (session_id, timestamp, window_name, window_id,
                                        thumbnail, screenshot, screenshot_path, type, label)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, timestamp, window_name or "", window_id or "",
                 thumbnail or "", screenshot or "", screenshot_path or None,
                 recording_type, label or None),
            )
            conn.commit()
            return cursor.lastrowid

    def get_recording(self, recording_id: int) -> Optional[Dict]:
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"SELECT {RECORDING_COLUMNS} FROM recordings WHERE id = ?",
                (recording_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_session_recordings(self, session_id: int) -> List[Dict]:
        """Recordings of a session ordered by capture timestamp ascending."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT {RECORDING_COLUMNS}
                FROM recordings
                WHERE session_id = ?
                ORDER BY timestamp ASC, id ASC
                """,
                (session_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_all_recordings(self) -> List[Dict]:
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"SELECT {RECORDING_COLUMNS} FROM recordings ORDER BY id"
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_recordings_without_path(self) -> List[Dict]:
        """Recordings still relying on the inline payload."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT {RECORDING_COLUMNS}
                FROM recordings
                WHERE screenshot_path IS NULL OR screenshot_path = ''
                ORDER BY id
                """
            )
            return [dict(row) for row in cursor.fetchall()]

    def update_recording_label(self, recording_id: int, label: str) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE recordings SET label = ? WHERE id = ?",
                (label, recording_id),
            )
            conn.commit()

    def update_recording_screenshot_path(self, recording_id: int, screenshot_path: str) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE recordings SET screenshot_path = ? WHERE id = ?",
                (screenshot_path, recording_id),
            )
            conn.commit()

    def clear_inline_payloads(self, recording_ids: List[int]) -> int:
        """Blank the legacy screenshot/thumbnail columns of the given rows.

        Returns:
            Number of rows changed.
        """
        if not recording_ids:
            return 0
        cleaned = 0
        with self.get_connection() as conn:
            for recording_id in recording_ids:
                cursor = conn.execute(
                    """
                    UPDATE recordings SET screenshot = '', thumbnail = ''
                    WHERE id = ? AND (screenshot != '' OR thumbnail != '')
                    """,
                    (recording_id,),
                )
                cleaned += cursor.rowcount
            conn.commit()
        return cleaned

    def delete_recording(self, session_id: int, recording_id: int) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "DELETE FROM recordings WHERE session_id = ? AND id = ?",
                (session_id, recording_id),
            )
            conn.commit()

    # =========================================================================
    # Comments
    # =========================================================================

    def create_comment(self, session_id: int, start_time: int, end_time: int,
                       comment: str, created_at: str = None) -> int:
        """Insert a time-range comment.

        Raises:
            ValueError: If start_time is after end_time.
        """
        if start_time > end_time:
            raise ValueError(f"Comment start {start_time} is after end {end_time}")

        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO comments (session_id, start_time, end_time, comment, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, start_time, end_time, comment, created_at or utc_now_iso()),
            )
            conn.commit()
            return cursor.lastrowid

    def get_comment(self, comment_id: int) -> Optional[Dict]:
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"SELECT {COMMENT_COLUMNS} FROM comments WHERE id = ?",
                (comment_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def update_comment(self, comment_id: int, start_time: int, end_time: int,
                       comment: str) -> None:
        if start_time > end_time:
            raise ValueError(f"Comment start {start_time} is after end {end_time}")
        with self.get_connection() as conn:
            conn.execute(
                """
                UPDATE comments
                SET start_time = ?, end_time = ?, comment = ?
                WHERE id = ?
                """,
                (start_time, end_time, comment, comment_id),
            )
            conn.commit()

    def delete_comment(self, comment_id: int) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            conn.commit()

    def get_session_comments(self, session_id: int) -> List[Dict]:
        """Comments of a session ordered by start offset ascending."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT {COMMENT_COLUMNS}
                FROM comments
                WHERE session_id = ?
                ORDER BY start_time ASC, id ASC
                """,
                (session_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def count_rows(self) -> Dict[str, int]:
        """Row counts per table."""
        with self.get_connection() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]
                for table in ('sessions', 'recordings', 'comments')
            }
