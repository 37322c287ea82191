"""Pull-sync of remote sessions into the local stores.

A remote session whose id already exists locally is skipped in its entirety.
There is no partial re-sync and no conflict detection, so a remote edit made
after the first sync is never pulled.

SyncCoordinator gates SyncEngine runs per user: one in flight at a time, and
none within ttl_seconds of the last successful run.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .backend import RemoteBackend
from .files import SessionFiles
from .storage import APPROVAL_STATES, SESSION_KINDS, RecordingStorage

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class SyncEngine:
    """Copies a user's remote sessions, recordings and comments to local storage."""

    def __init__(self, storage: RecordingStorage, files: SessionFiles, backend: RemoteBackend):
        self.storage = storage
        self.files = files
        self.backend = backend

    def sync_all_sessions_to_local(self, user_id: str) -> SyncResult:
        """Sync every remote session of a user that is not yet local.

        Per-session failures are collected; the batch continues.
        """
        result = SyncResult()
        sessions = self.backend.fetch_user_sessions(user_id)
        if not sessions.ok:
            logger.error(f"Failed to fetch remote sessions for {user_id}: {sessions.error}")
            result.success = False
            result.errors.append(f"Failed to fetch sessions: {sessions.error}")
            return result

        logger.info(f"Found {len(sessions.data)} remote sessions for {user_id}")
        for remote_session in sessions.data:
            session_id = remote_session.get("id")
            try:
                if self.sync_session_to_local(remote_session, user_id):
                    result.synced += 1
                else:
                    result.skipped += 1
            except Exception as e:
                logger.error(f"Failed to sync session {session_id}: {e}")
                result.failed += 1
                result.errors.append(f"Session {session_id}: {e}")

        result.success = result.failed == 0
        logger.info(f"Sync complete: {result.synced} synced, {result.skipped} skipped, {result.failed} failed")
        return result

    def sync_session_to_local(self, remote_session: Dict, user_id: str) -> bool:
        """Copy one remote session into the local stores.

        Returns:
            True if the session was written, False if it already existed.

        Raises:
            RuntimeError: If recordings or comments cannot be fetched.
        """
        session_id = remote_session["id"]
        if self.storage.session_exists(session_id):
            logger.debug(f"Session {session_id} already exists locally, skipping")
            return False

        recordings = self.backend.fetch_session_recordings(user_id, session_id)
        if not recordings.ok:
            raise RuntimeError(f"Failed to fetch recordings: {recordings.error}")
        comments = self.backend.fetch_session_comments(user_id, session_id)
        if not comments.ok:
            raise RuntimeError(f"Failed to fetch comments: {comments.error}")

        self.storage.upsert_session({
            "id": session_id,
            "created_at": remote_session["created_at"],
            "duration": remote_session.get("duration") or 0,
            "approval_state": _one_of(remote_session.get("approval_state"), APPROVAL_STATES, "draft"),
            "session_status": _one_of(remote_session.get("session_status"), SESSION_KINDS, "passive"),
            "task_id": remote_session.get("task_id"),
            "reward_id": remote_session.get("reward_id"),
        })

        try:
            self._copy_contents(session_id, recordings.data, comments.data)
        except Exception as e:
            logger.error(f"Sync of session {session_id} failed part way, rolling back: {e}")
            self.storage.delete_session(session_id)
            self.files.delete_session_folder(session_id)
            raise

        logger.info(f"Synced session {session_id} ({len(recordings.data)} recordings, "
                    f"{len(comments.data)} comments)")
        return True

    def _copy_contents(self, session_id: int, recordings: List[Dict], comments: List[Dict]) -> None:
        for recording in recordings:
            url = recording.get("screenshot_url")
            image = self.backend.download_screenshot(url) if url else None
            if image is None or not image.ok:
                logger.warning(f"Skipping recording {recording.get('id')} of session {session_id}: "
                               f"{image.error if image else 'no screenshot URL'}")
                continue

            path = self.files.save_screenshot(session_id, recording["id"], image.data)
            self.storage.create_recording(
                session_id,
                recording["timestamp"],
                recording.get("window_name") or "",
                recording.get("window_id") or "",
                _one_of(recording.get("type"), SESSION_KINDS, "passive"),
                screenshot_path=path,
                label=recording.get("label"),
            )

        for comment in comments:
            self.storage.create_comment(
                session_id,
                comment["start_time"],
                comment["end_time"],
                comment["comment"],
                created_at=comment.get("created_at"),
            )

        self.files.update_session_metadata(session_id, self.storage)


def _one_of(value, allowed, default):
    return value if value in allowed else default


class SyncCoordinator:
    """Runs SyncEngine passes in the background, at most one per user at a time.

    A request while a pass for the same user is running gets that pass's
    future. A request within ttl_seconds of the last successful pass is
    ignored.
    """

    def __init__(self, engine: SyncEngine, ttl_seconds: float = 120.0,
                 clock: Callable[[], float] = time.monotonic,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}
        self._last_success: Dict[str, float] = {}

    def sync_if_needed(self, user_id: str) -> Optional[Future]:
        """Start a sync pass for user_id unless one is running or recently succeeded.

        Returns:
            Future resolving to a SyncResult, or None if the TTL suppressed it.
        """
        with self._lock:
            running = self._in_flight.get(user_id)
            if running is not None:
                logger.debug(f"Sync already in progress for {user_id}")
                return running

            last = self._last_success.get(user_id)
            if last is not None and self._clock() - last < self.ttl_seconds:
                logger.debug(f"Skipping sync for {user_id}, last success {self._clock() - last:.0f}s ago")
                return None

            future = self._executor.submit(self._run, user_id)
            self._in_flight[user_id] = future
            return future

    def _run(self, user_id: str) -> SyncResult:
        try:
            result = self.engine.sync_all_sessions_to_local(user_id)
        except Exception as e:
            logger.error(f"Sync for {user_id} failed: {e}")
            result = SyncResult(success=False, errors=[str(e)])
        with self._lock:
            self._in_flight.pop(user_id, None)
            if result.success:
                self._last_success[user_id] = self._clock()
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
