"""Per-session File Store for screenshots and metadata snapshots.

Every session owns one directory under the recordings root:

    recordings/
        session_12/
            screenshot_001.png
            screenshot_002.png
            metadata.txt        human-readable summary
            session_info.json   structured snapshot of the same data

Screenshot files are named from the recording id, zero padded to three
digits, so names never collide inside a session and sort in capture order.
The two metadata files are derived data. They are regenerated wholesale from
the local store on every write and are never read back as a source of truth.

Paths are stored in RecordingStorage rows as plain strings. Deleting a row
does not delete its file; callers remove both.
"""

import base64
import binascii
import json
import logging
import os
import re
import shutil
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from .timeline import parse_timestamp

if TYPE_CHECKING:
    from .storage import RecordingStorage

logger = logging.getLogger(__name__)

SCREENSHOT_CACHE_MAX = 50

_DATA_URL_RE = re.compile(r"^data:image/(png|jpeg|jpg|webp|gif);base64,", re.IGNORECASE)


class FileStoreError(Exception):
    """Raised when a screenshot cannot be written to the File Store."""
    pass


def decode_inline_image(payload: str) -> bytes:
    """Decode a legacy inline ``data:image/...;base64,`` payload.

    Args:
        payload: Data URL as stored in the recordings.screenshot column.

    Returns:
        Raw image bytes.

    Raises:
        ValueError: If the payload is not a base64 image data URL.
    """
    if not payload or not _DATA_URL_RE.match(payload):
        raise ValueError("Invalid screenshot data")
    try:
        return base64.b64decode(_DATA_URL_RE.sub("", payload, count=1), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def encode_inline_image(image: bytes, mime: str = "image/png") -> str:
    """Inverse of decode_inline_image()."""
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


def format_duration(seconds: int) -> str:
    hours, rest = divmod(int(seconds or 0), 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_timestamp(value: Optional[str]) -> str:
    epoch = parse_timestamp(value)
    if epoch is None:
        return value or ""
    return datetime.fromtimestamp(epoch).strftime("%m/%d/%Y, %H:%M:%S")


def format_offset(seconds: int) -> str:
    """Seconds as MM:SS for comment ranges."""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


class SessionFiles:
    """File Store rooted at a recordings directory.

    Single-writer: concurrent saves for the same recording id overwrite each
    other.

    Attributes:
        root (Path): Directory containing one session_<id> folder per session

    Example:
        >>> files = SessionFiles("~/session-recorder-data/recordings")
        >>> path = files.save_screenshot(12, 1, png_bytes)
        >>> files.read_screenshot(path) == png_bytes
        True
    """

    def __init__(self, root: str = "~/session-recorder-data/recordings"):
        self.root = Path(root).expanduser()
        self._cache: "OrderedDict[str, tuple]" = OrderedDict()

    def ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise FileStoreError(f"Permission denied creating recordings directory {self.root}: {e}") from e
        return self.root

    def session_folder(self, session_id: int) -> Path:
        return self.root / f"session_{session_id}"

    def create_session_folder(self, session_id: int) -> Path:
        self.ensure_root()
        folder = self.session_folder(session_id)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    @staticmethod
    def screenshot_filename(recording_id: int) -> str:
        return f"screenshot_{recording_id:03d}.png"

    def save_screenshot(self, session_id: int, recording_id: int, image: bytes) -> str:
        """Write screenshot bytes for a recording.

        Creates the session folder if needed and overwrites any existing
        file for the same recording id.

        Args:
            session_id: Owning session
            recording_id: Recording id used to name the file
            image: Encoded image bytes

        Returns:
            str: Absolute path of the written file

        Raises:
            FileStoreError: If the folder or file cannot be written
        """
        try:
            folder = self.create_session_folder(session_id)
            filepath = folder / self.screenshot_filename(recording_id)
            filepath.write_bytes(image)
        except OSError as e:
            raise FileStoreError(f"Failed to save screenshot for recording {recording_id}: {e}") from e

        self._cache.pop(str(filepath.resolve()), None)
        logger.debug(f"Screenshot saved: {filepath}")
        return str(filepath.resolve())

    def read_screenshot(self, filepath: Optional[str]) -> Optional[bytes]:
        """Read screenshot bytes, or None if the file is missing or unreadable.

        Recently read files are served from a small LRU cache that is
        invalidated when the file's mtime changes.
        """
        if not filepath:
            return None
        path = Path(filepath)
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            return None

        key = str(path.resolve())
        cached = self._cache.get(key)
        if cached and cached[0] == mtime:
            self._cache.move_to_end(key)
            return cached[1]

        try:
            data = path.read_bytes()
        except OSError as e:
            logger.error(f"Error reading screenshot {filepath}: {e}")
            return None

        self._cache[key] = (mtime, data)
        self._cache.move_to_end(key)
        while len(self._cache) > SCREENSHOT_CACHE_MAX:
            self._cache.popitem(last=False)
        return data

    def delete_session_folder(self, session_id: int) -> None:
        """Recursively delete a session folder. Missing folders are ignored."""
        folder = self.session_folder(session_id)
        prefix = str(folder.resolve()) + os.sep
        for key in [k for k in self._cache if k.startswith(prefix)]:
            del self._cache[key]
        shutil.rmtree(folder, ignore_errors=True)

    def generate_metadata_file(self, session: Dict, recordings: List[Dict],
                               comments: List[Dict]) -> Path:
        """Write metadata.txt for a session.

        Sections SESSION INFORMATION, RECORDINGS and COMMENTS, in that order.
        The file is rewritten in full on every call.
        """
        lines = [
            "SESSION INFORMATION",
            "==================",
            f"Session ID: {session['id']}",
            f"Created: {format_timestamp(session.get('created_at'))}",
            f"Duration: {format_duration(session.get('duration') or 0)}",
            f"Status: {session.get('approval_state')}",
            f"Type: {session.get('session_status')}",
        ]
        if session.get("task_id"):
            lines.append(f"Task ID: {session['task_id']}")
        lines += ["", "RECORDINGS", "=========="]

        if not recordings:
            lines.append("No recordings yet.")
        for index, recording in enumerate(recordings, start=1):
            lines.append(f"{index}. {self._screenshot_name(recording)}")
            lines.append(f"   Timestamp: {format_timestamp(recording.get('timestamp'))}")
            lines.append(f"   Window: {recording.get('window_name')}")
            if recording.get("label"):
                lines.append(f"   Label: {recording['label']}")
            lines.append("")

        lines += ["", "COMMENTS", "========"]
        if not comments:
            lines.append("No comments.")
        for comment in comments:
            lines.append(
                f"[{format_offset(comment['start_time'])} - {format_offset(comment['end_time'])}] "
                f"{comment['comment']}"
            )

        folder = self.create_session_folder(session["id"])
        path = folder / "metadata.txt"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def save_session_info(self, session: Dict, recordings: List[Dict],
                          comments: List[Dict]) -> Path:
        """Write session_info.json mirroring metadata.txt."""
        info = {
            "session": {
                "id": session["id"],
                "created_at": session.get("created_at"),
                "duration": session.get("duration") or 0,
                "approval_state": session.get("approval_state"),
                "session_status": session.get("session_status"),
                "task_id": session.get("task_id"),
                "reward_id": session.get("reward_id"),
            },
            "recordings": [
                {
                    "id": r["id"],
                    "timestamp": r.get("timestamp"),
                    "window_name": r.get("window_name"),
                    "window_id": r.get("window_id"),
                    "screenshot_file": self._screenshot_name(r),
                    "type": r.get("type"),
                    "label": r.get("label"),
                }
                for r in recordings
            ],
            "comments": [
                {
                    "id": c["id"],
                    "start_time": c["start_time"],
                    "end_time": c["end_time"],
                    "comment": c["comment"],
                    "created_at": c.get("created_at"),
                }
                for c in comments
            ],
        }

        folder = self.create_session_folder(session["id"])
        path = folder / "session_info.json"
        path.write_text(json.dumps(info, indent=2), encoding="utf-8")
        return path

    def load_session_info(self, session_id: int) -> Optional[Dict]:
        path = self.session_folder(session_id) / "session_info.json"
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading session info for session {session_id}: {e}")
            return None

    def update_session_metadata(self, session_id: int, storage: "RecordingStorage") -> bool:
        """Regenerate both metadata files from the local store.

        Errors are logged, not raised; the snapshots can always be rebuilt.

        Returns:
            True if both files were written.
        """
        try:
            session = storage.get_session(session_id)
            if not session:
                logger.debug(f"Session {session_id} no longer exists, skipping metadata")
                return False
            recordings = storage.get_session_recordings(session_id)
            comments = storage.get_session_comments(session_id)
            self.generate_metadata_file(session, recordings, comments)
            self.save_session_info(session, recordings, comments)
            return True
        except Exception as e:
            logger.error(f"Error updating metadata for session {session_id}: {e}")
            return False

    def get_storage_stats(self) -> Dict:
        """Count session folders and the bytes they hold."""
        if not self.root.exists():
            return {"total_sessions": 0, "total_size": 0, "recordings_dir": str(self.root)}

        folders = [p for p in self.root.iterdir() if p.is_dir() and p.name.startswith("session_")]
        total_size = sum(f.stat().st_size for folder in folders for f in folder.iterdir() if f.is_file())
        return {
            "total_sessions": len(folders),
            "total_size": total_size,
            "recordings_dir": str(self.root),
        }

    @staticmethod
    def _screenshot_name(recording: Dict) -> str:
        if recording.get("screenshot_path"):
            return Path(recording["screenshot_path"]).name
        return f"screenshot_{recording['id']:03d}.png (inline)"
