"""Session submission pipeline.

Uploads a local draft session to the remote backend:

    validate -> derive duration -> create remote session
      -> upload screenshots (retry with backoff, per recording)
      -> bulk insert recordings
      -> insert comments (best effort)
      -> award points (best effort)
      -> upload session_info.json (best effort)

A failed screenshot upload or a failed bulk insert rolls the attempt back by
deleting the remote session row. Screenshots already uploaded to object
storage are not deleted. They are listed in the undo log as orphaned so the
leak is visible.

The pipeline never marks the local session submitted; the caller does that
after a successful result (see RecordingDaemon.submit_session).
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .backend import BackendResult, RemoteBackend
from .config import SubmissionConfig
from .files import SessionFiles, decode_inline_image
from .storage import RecordingStorage
from .timeline import latest_timeline_seconds, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class UploadProgress:
    current: int
    total: int
    status: str


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


@dataclass
class SubmissionResult:
    """Outcome of one submission attempt.

    Attributes:
        success: True when the session and all recordings reached the backend
        error: Human-readable failure message
        remote_session_id: Id of the remote session, set whenever it was kept
        points_earned: Points computed from the final duration
        duration: Final (derived) duration in seconds
        failed_recording_id: Recording whose upload exhausted its retries
        warnings: Best-effort steps that failed without failing the submission
        undo_log: Compensating actions taken during rollback
    """
    success: bool
    error: Optional[str] = None
    remote_session_id: Optional[int] = None
    points_earned: int = 0
    duration: int = 0
    failed_recording_id: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    undo_log: List[str] = field(default_factory=list)


class SubmissionSaga:
    """Remote steps completed so far in one submission attempt."""

    def __init__(self):
        self.remote_session_id: Optional[int] = None
        self.uploaded_objects: List[str] = []
        self.recordings_inserted = False

    def compensate(self, backend: RemoteBackend) -> List[str]:
        """Undo what can be undone and describe every action taken."""
        undo_log = []
        if self.remote_session_id is not None:
            result = backend.delete_session(self.remote_session_id)
            if result.ok:
                undo_log.append(f"deleted remote session {self.remote_session_id}")
            else:
                undo_log.append(f"failed to delete remote session {self.remote_session_id}: {result.error}")
            self.remote_session_id = None
        for path in self.uploaded_objects:
            undo_log.append(f"orphaned object {path}")

        for entry in undo_log:
            logger.warning(f"Rollback: {entry}")
        return undo_log


def points_for_duration(duration_seconds: int, points_per_minute: int = 5) -> int:
    """Points for a session: whole minutes times points_per_minute."""
    return max(0, int(duration_seconds) // 60) * points_per_minute


def derive_duration(session: Dict, recordings: List[Dict]) -> int:
    """Canonical session duration.

    The timeline offset of the latest recording when there are recordings,
    otherwise the stored duration.
    """
    if recordings:
        return latest_timeline_seconds(recordings)
    return int(session.get("duration") or 0)


class _ProgressReporter:
    """Forwards progress to a callback, never letting `current` go backwards."""

    def __init__(self, callback: Optional[Callable[[UploadProgress], None]]):
        self._callback = callback
        self._current = 0

    def __call__(self, current: int, total: int, status: str) -> None:
        self._current = max(self._current, current)
        if self._callback is None:
            return
        try:
            self._callback(UploadProgress(self._current, total, status))
        except Exception as e:
            logger.debug(f"Progress callback failed: {e}")


class SubmissionPipeline:
    """Submits local sessions to the remote backend.

    Attributes:
        storage: Local store
        files: File Store holding screenshots
        backend: Remote backend client
        config: Retry and points settings
    """

    def __init__(self, storage: RecordingStorage, files: SessionFiles,
                 backend: RemoteBackend, config: Optional[SubmissionConfig] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.storage = storage
        self.files = files
        self.backend = backend
        self.config = config or SubmissionConfig()
        self._sleep = sleep

    def validate(self, session_id: int) -> ValidationResult:
        """Check that a session exists, is a draft and has recordings."""
        try:
            session = self.storage.get_session(session_id)
            if not session:
                return ValidationResult(False, "Session not found")
            if session["approval_state"] != "draft":
                return ValidationResult(False, "Session has already been submitted")
            if not self.storage.get_session_recordings(session_id):
                return ValidationResult(False, "Session must have at least one recording")
        except Exception as e:
            return ValidationResult(False, str(e) or "Validation failed")
        return ValidationResult(True)

    def submit(self, user_id: str, session_id: int,
               on_progress: Optional[Callable[[UploadProgress], None]] = None) -> SubmissionResult:
        """Upload a draft session with its recordings and comments.

        Args:
            user_id: Remote user owning the uploaded rows and objects
            session_id: Local session to submit
            on_progress: Called with UploadProgress as the upload advances

        Returns:
            SubmissionResult describing the outcome.
        """
        saga = SubmissionSaga()
        try:
            return self._submit(user_id, session_id, _ProgressReporter(on_progress), saga)
        except Exception as e:
            logger.error(f"Submission of session {session_id} failed: {e}")
            if saga.recordings_inserted:
                # Past the commit point; the remote session is kept.
                return SubmissionResult(
                    success=False,
                    remote_session_id=saga.remote_session_id,
                    error=str(e) or "Submission failed after recordings were saved",
                )
            return SubmissionResult(
                success=False,
                error=str(e) or "Submission failed",
                undo_log=saga.compensate(self.backend),
            )

    def _submit(self, user_id: str, session_id: int, progress: _ProgressReporter,
                saga: SubmissionSaga) -> SubmissionResult:
        validation = self.validate(session_id)
        if not validation.valid:
            return SubmissionResult(success=False, error=validation.error)

        session = self.storage.get_session(session_id)
        recordings = self.storage.get_session_recordings(session_id)
        comments = self.storage.get_session_comments(session_id)
        total = len(recordings)

        duration = derive_duration(session, recordings)
        if duration != session["duration"]:
            try:
                self.storage.update_duration(session_id, duration)
                logger.info(f"Corrected duration of session {session_id}: {session['duration']}s -> {duration}s")
            except Exception as e:
                logger.warning(f"Failed to persist derived duration for session {session_id}: {e}")

        progress(0, total, "Preparing upload...")

        created = self.backend.create_session({
            "user_id": user_id,
            "duration": duration,
            "created_at": session["created_at"],
            "approval_state": "submitted",
            "session_status": session["session_status"] or "passive",
            "task_id": session["task_id"],
            "reward_id": session["reward_id"],
        })
        if not created.ok:
            logger.error(f"Session creation error: {created.error}")
            return SubmissionResult(success=False, error="Failed to create session in database",
                                    duration=duration)
        remote_session_id = created.data["id"]
        saga.remote_session_id = remote_session_id

        rows = []
        for index, recording in enumerate(recordings):
            progress(index, total, f"Uploading screenshot {index + 1} of {total}...")

            object_path = f"{user_id}/{remote_session_id}/screenshot_{recording['id']}.png"
            image = self._image_bytes(recording)
            url = None
            if image is not None:
                url = self._with_retry(
                    lambda: self.backend.upload_object(object_path, image, "image/png"),
                    f"screenshot for recording {recording['id']}",
                )
            if url is None:
                return SubmissionResult(
                    success=False,
                    error=f"Failed to upload screenshot for recording {recording['id']}",
                    duration=duration,
                    failed_recording_id=recording["id"],
                    undo_log=saga.compensate(self.backend),
                )
            saga.uploaded_objects.append(object_path)

            rows.append({
                "user_id": user_id,
                "session_id": remote_session_id,
                "timestamp": recording["timestamp"],
                "window_name": recording["window_name"],
                "window_id": recording["window_id"],
                "thumbnail_url": url,
                "screenshot_url": url,
                "type": recording["type"],
                "label": recording["label"] or None,
            })

        inserted = self.backend.insert_recordings(rows)
        if not inserted.ok:
            logger.error(f"Recordings insert error: {inserted.error}")
            return SubmissionResult(
                success=False,
                error="Failed to save recordings to database",
                duration=duration,
                undo_log=saga.compensate(self.backend),
            )
        saga.recordings_inserted = True
        progress(total, total, "Saved recordings to database")

        warnings = []
        if comments:
            progress(total, total, "Saving comments...")
            result = self._best_effort(lambda: self.backend.insert_comments([
                {
                    "user_id": user_id,
                    "session_id": remote_session_id,
                    "start_time": c["start_time"],
                    "end_time": c["end_time"],
                    "comment": c["comment"],
                    "created_at": c["created_at"],
                }
                for c in comments
            ]))
            if not result.ok:
                logger.warning(f"Comments insert error for session {session_id}: {result.error}")
                warnings.append(f"comments: {result.error}")

        points = points_for_duration(duration, self.config.points_per_minute)
        if points > 0:
            result = self._best_effort(lambda: self.backend.add_user_points(user_id, points))
            if not result.ok:
                logger.warning(f"Failed to credit {points} points to {user_id}: {result.error}")
                warnings.append(f"points: {result.error}")

        progress(total, total, "Uploading metadata...")
        snapshot = self._metadata_snapshot(user_id, session, remote_session_id, duration,
                                           points, recordings, rows, comments)
        metadata_url = self._with_retry(
            lambda: self.backend.upload_object(
                f"{user_id}/{remote_session_id}/session_info.json",
                json.dumps(snapshot, indent=2).encode("utf-8"),
                "application/json",
            ),
            "session metadata",
        )
        if metadata_url is None:
            logger.warning("Failed to upload session metadata JSON, continuing with submission")
            warnings.append("metadata: upload failed")

        progress(total, total, "Complete!")
        logger.info(f"Submitted session {session_id} as remote session {remote_session_id} "
                    f"({total} recordings, {points} points)")
        return SubmissionResult(
            success=True,
            remote_session_id=remote_session_id,
            points_earned=points,
            duration=duration,
            warnings=warnings,
        )

    def _image_bytes(self, recording: Dict) -> Optional[bytes]:
        """File Store bytes, falling back to the legacy inline payload."""
        image = self.files.read_screenshot(recording.get("screenshot_path"))
        if image is not None:
            return image
        try:
            return decode_inline_image(recording.get("screenshot") or "")
        except ValueError:
            logger.error(f"No image data for recording {recording['id']}")
            return None

    @staticmethod
    def _best_effort(call: Callable[[], BackendResult]) -> BackendResult:
        """Run a post-insert step, reporting a raised error as a failed result."""
        try:
            return call()
        except Exception as e:
            return BackendResult(error=str(e) or type(e).__name__)

    def _with_retry(self, upload: Callable, description: str) -> Optional[str]:
        """Run upload up to max_attempts times with exponential backoff.

        Returns:
            The uploaded object's URL, or None once attempts are exhausted.
        """
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            result = upload()
            if result.ok:
                return result.data
            logger.warning(f"Upload of {description} failed (attempt {attempt}/{attempts}): {result.error}")
            if attempt < attempts:
                self._sleep(self.config.backoff_base_seconds * 2 ** (attempt - 1))
        return None

    @staticmethod
    def _metadata_snapshot(user_id: str, session: Dict, remote_session_id: int,
                           duration: int, points: int, recordings: List[Dict],
                           rows: List[Dict], comments: List[Dict]) -> Dict:
        return {
            "local_session_id": session["id"],
            "remote_session_id": remote_session_id,
            "user_id": user_id,
            "created_at": session["created_at"],
            "submitted_at": utc_now_iso(),
            "duration": duration,
            "session_status": session["session_status"] or "passive",
            "task_id": session["task_id"],
            "reward_id": session["reward_id"],
            "points_earned": points,
            "recordings": [
                {
                    "local_id": recording["id"],
                    "timestamp": row["timestamp"],
                    "window_name": row["window_name"],
                    "window_id": row["window_id"],
                    "screenshot_url": row["screenshot_url"],
                    "screenshot_file": f"screenshot_{recording['id']}.png",
                    "type": row["type"],
                    "label": row["label"],
                }
                for recording, row in zip(recordings, rows)
            ],
            "comments": [
                {
                    "start_time": c["start_time"],
                    "end_time": c["end_time"],
                    "comment": c["comment"],
                    "created_at": c["created_at"],
                }
                for c in comments
            ],
        }
