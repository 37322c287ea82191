"""Session Recorder Daemon.

Wires the recorder components together and exposes them as a command-line
tool. The daemon owns the single active recording session: it starts and
stops the SessionTimer, captures a screenshot every capture interval, stores
it through RecordingStorage and SessionFiles, and keeps each session's
metadata snapshot fresh through a debounced scheduler.

Features:
- Pause/resume with auto-pause while a sensitive window has focus
- Debounced metadata regeneration, drained synchronously at shutdown
- Submission of finished sessions to the remote backend
- Pull-sync of remote sessions, gated per user
- Legacy inline-image migration commands

Dependencies:
- mss / Pillow: screen capture (recorder.capture)
- requests: remote backend (recorder.backend)
- PyYAML: configuration (recorder.config)
- xdotool: X11 window information

Usage:
    session-recorder record --kind passive
    session-recorder list
    session-recorder submit 12 --user-id <uuid>
    session-recorder sync --user-id <uuid>
    session-recorder migrate && session-recorder verify && session-recorder cleanup
    session-recorder config set sync ttl_seconds 300
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import yaml

from .backend import RemoteBackend
from .capture import CaptureResult, ScreenCapture
from .config import Config, ConfigManager
from .files import FileStoreError, SessionFiles, format_duration
from .migration import MigrationEngine
from .scheduler import DebouncedScheduler
from .storage import SESSION_KINDS, RecordingStorage
from .submission import SubmissionPipeline, SubmissionResult, UploadProgress
from .sync import SyncCoordinator, SyncEngine
from .timer import SessionTimer, TimerSnapshot

logger = logging.getLogger(__name__)


class SessionStateError(Exception):
    """Raised when an operation does not fit the current recording state."""
    pass


class RecordingDaemon:
    """Coordinates recording, storage, submission and sync.

    Attributes:
        config (Config): Loaded configuration
        storage (RecordingStorage): Local store
        files (SessionFiles): File Store
        backend (RemoteBackend): Remote backend client
        capture (ScreenCapture): Capture provider
        timer (SessionTimer): Timer of the active session
        scheduler (DebouncedScheduler): Metadata refresh scheduler
        running (bool): Controls the run() loop

    Example:
        >>> daemon = RecordingDaemon()
        >>> session_id = daemon.start_session("passive")
        >>> daemon.run()  # Blocks until interrupted
    """

    def __init__(self, config: Optional[Config] = None,
                 storage: Optional[RecordingStorage] = None,
                 files: Optional[SessionFiles] = None,
                 backend: Optional[RemoteBackend] = None,
                 capture: Optional[ScreenCapture] = None,
                 timer: Optional[SessionTimer] = None,
                 scheduler: Optional[DebouncedScheduler] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or Config()
        if storage is None:
            self.config.storage.root.mkdir(parents=True, exist_ok=True)
            storage = RecordingStorage(self.config.storage.db_path)
        self.storage = storage
        self.files = files or SessionFiles(str(self.config.storage.recordings_dir))
        self.backend = backend or RemoteBackend.from_config(self.config.backend)
        self.capture = capture or ScreenCapture()
        self.timer = timer or SessionTimer(clock)
        self.scheduler = scheduler or DebouncedScheduler()

        self.pipeline = SubmissionPipeline(self.storage, self.files, self.backend,
                                           self.config.submission, sleep=sleep)
        self.sync_engine = SyncEngine(self.storage, self.files, self.backend)
        self.sync_coordinator = SyncCoordinator(self.sync_engine, self.config.sync.ttl_seconds, clock=clock)
        self.migration = MigrationEngine(self.storage, self.files)

        self.running = True
        self.auto_paused = False
        self._clock = clock
        self._sleep = sleep
        self._session_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._last_capture_at: Optional[float] = None

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def is_sensitive_window(self, window_name: Optional[str]) -> bool:
        """True if the window title matches an excluded app or title keyword."""
        if not window_name:
            return False
        title = window_name.lower()
        keywords = self.config.privacy.excluded_apps + self.config.privacy.excluded_titles
        return any(keyword.lower() in title for keyword in keywords)

    def start_session(self, kind: str = "passive", task_id: Optional[int] = None) -> int:
        """Create a draft session and start timing it.

        Raises:
            SessionStateError: If a session is already active or a sensitive
                window has focus
            ValueError: If kind is not a known session kind
        """
        if kind not in SESSION_KINDS:
            raise ValueError(f"Invalid session kind: {kind}")

        with self._session_lock:
            if self.timer.state != "idle":
                raise SessionStateError(f"Session {self.timer.session_id} is already recording")

            _, window_name = self.capture.get_active_window()
            if self.is_sensitive_window(window_name):
                raise SessionStateError("Cannot record sensitive window")

            session_id = self.storage.create_session(kind, task_id=task_id)
            self.files.create_session_folder(session_id)
            self.timer.begin(session_id)
            self.auto_paused = False
            self._last_capture_at = None

        self.schedule_metadata(session_id)
        logger.info(f"Started {kind} session {session_id}")
        return session_id

    def pause(self) -> None:
        self.timer.pause()
        logger.info(f"Paused session {self.timer.session_id}")

    def resume(self) -> None:
        self.auto_paused = False
        self.timer.resume()
        logger.info(f"Resumed session {self.timer.session_id}")

    def stop(self) -> Optional[TimerSnapshot]:
        """Stop the active session and persist its duration.

        Pending metadata for the session is replaced by an immediate
        regeneration.

        Returns:
            The final TimerSnapshot, or None if nothing was recording.
        """
        with self._session_lock:
            snapshot = self.timer.stop()
            self.auto_paused = False
        if snapshot.session_id is None:
            return None

        self.storage.update_duration(snapshot.session_id, snapshot.elapsed_seconds)
        self.scheduler.cancel(snapshot.session_id)
        self.files.update_session_metadata(snapshot.session_id, self.storage)
        logger.info(f"Stopped session {snapshot.session_id} after {format_duration(snapshot.elapsed_seconds)}")
        return snapshot

    def delete_session(self, session_id: int) -> None:
        """Delete a session's rows and folder, stopping it first if active."""
        with self._session_lock:
            if self.timer.session_id == session_id:
                self.timer.stop()
                self.auto_paused = False
        self.scheduler.cancel(session_id)
        self.storage.delete_session(session_id)
        self.files.delete_session_folder(session_id)

    # =========================================================================
    # Recordings and comments
    # =========================================================================

    def schedule_metadata(self, session_id: int) -> None:
        self.scheduler.schedule(
            session_id,
            self.config.metadata.debounce_seconds,
            lambda: self.files.update_session_metadata(session_id, self.storage),
        )

    def save_recording(self, session_id: int, capture: CaptureResult,
                       label: Optional[str] = None) -> int:
        """Store a captured frame as a file-backed recording.

        The row is created first so its id can name the file. If the file
        cannot be written the row is removed again.

        Raises:
            ValueError: If the session does not exist
            FileStoreError: If the screenshot cannot be written
        """
        session = self.storage.get_session(session_id)
        if not session:
            raise ValueError(f"Session {session_id} not found")

        recording_id = self.storage.create_recording(
            session_id,
            capture.timestamp,
            capture.window_name,
            capture.window_id,
            session["session_status"],
            label=label,
        )
        try:
            path = self.files.save_screenshot(session_id, recording_id, capture.image)
        except FileStoreError:
            self.storage.delete_recording(session_id, recording_id)
            raise
        self.storage.update_recording_screenshot_path(recording_id, path)

        self.schedule_metadata(session_id)
        logger.debug(f"Saved recording {recording_id} of session {session_id}")
        return recording_id

    def update_recording_label(self, recording_id: int, label: str) -> None:
        recording = self.storage.get_recording(recording_id)
        if not recording:
            raise ValueError(f"Recording {recording_id} not found")
        self.storage.update_recording_label(recording_id, label)
        self.schedule_metadata(recording["session_id"])

    def delete_recording(self, session_id: int, recording_id: int) -> None:
        recording = self.storage.get_recording(recording_id)
        self.storage.delete_recording(session_id, recording_id)
        if recording and recording.get("screenshot_path"):
            try:
                Path(recording["screenshot_path"]).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete screenshot {recording['screenshot_path']}: {e}")
        self.schedule_metadata(session_id)

    def add_comment(self, session_id: int, start_time: int, end_time: int, comment: str) -> int:
        comment_id = self.storage.create_comment(session_id, start_time, end_time, comment)
        self.schedule_metadata(session_id)
        return comment_id

    def update_comment(self, comment_id: int, start_time: int, end_time: int, comment: str) -> None:
        existing = self.storage.get_comment(comment_id)
        if not existing:
            raise ValueError(f"Comment {comment_id} not found")
        self.storage.update_comment(comment_id, start_time, end_time, comment)
        self.schedule_metadata(existing["session_id"])

    def delete_comment(self, comment_id: int) -> None:
        existing = self.storage.get_comment(comment_id)
        self.storage.delete_comment(comment_id)
        if existing:
            self.schedule_metadata(existing["session_id"])

    # =========================================================================
    # Remote
    # =========================================================================

    def submit_session(self, user_id: str, session_id: int,
                       on_progress: Optional[Callable[[UploadProgress], None]] = None) -> SubmissionResult:
        """Submit a finished session and mark it submitted locally on success."""
        if self.timer.session_id == session_id:
            return SubmissionResult(success=False, error="Stop recording before submitting")

        result = self.pipeline.submit(user_id, session_id, on_progress=on_progress)
        if result.success:
            self.storage.submit_for_approval(session_id)
            self.schedule_metadata(session_id)
        return result

    def sync(self, user_id: str):
        """Start a background pull-sync for user_id if one is due."""
        return self.sync_coordinator.sync_if_needed(user_id)

    # =========================================================================
    # Capture loop
    # =========================================================================

    def tick(self) -> Optional[int]:
        """One poll step of the capture loop.

        Auto-pauses the timer while a sensitive window has focus and resumes
        it once focus moves away. Captures a frame when the capture interval
        has elapsed. A tick that starts while another is still running is
        skipped.

        Returns:
            The id of the recording saved in this tick, if any.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous tick still running, skipping")
            return None
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> Optional[int]:
        session_id = self.timer.session_id
        if session_id is None:
            return None

        window = self.capture.get_active_window()
        window_name = window[1]
        sensitive = self.is_sensitive_window(window_name)
        if sensitive:
            if self.timer.state == "running":
                self.timer.pause()
                self.auto_paused = True
                logger.info(f"Sensitive window focused, paused session {session_id}")
            return None
        if self.auto_paused and self.timer.is_paused:
            self.timer.resume()
            self.auto_paused = False
            logger.info(f"Sensitive window closed, resumed session {session_id}")
        if self.timer.is_paused:
            return None

        now = self._clock()
        if self._last_capture_at is not None and now - self._last_capture_at < self.config.capture.interval_seconds:
            return None
        self._last_capture_at = now

        result = self.capture.capture_source(self.config.capture.source_id, "screen", window=window)
        if result is None:
            return None
        return self.save_recording(session_id, result)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def run(self) -> None:
        """Poll until stopped by a signal, then shut down cleanly."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        logger.info("Recording daemon starting...")
        try:
            while self.running:
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Error in capture loop: {e}")
                self._sleep(self.config.capture.poll_interval_seconds)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Stop the active session and flush pending metadata."""
        logger.info("Shutting down...")
        self.running = False
        self.stop()
        self.scheduler.drain_all()
        self.sync_coordinator.shutdown(wait=False)
        logger.info("Recording daemon stopped")


# =============================================================================
# Command line
# =============================================================================

def _print_progress(progress: UploadProgress) -> None:
    print(f"[{progress.current}/{progress.total}] {progress.status}", file=sys.stderr)


def _cmd_record(daemon: RecordingDaemon, args) -> int:
    session_id = daemon.start_session(args.kind, task_id=args.task_id)
    print(f"Recording session {session_id} (Ctrl+C to stop)")
    daemon.run()
    return 0


def _cmd_list(daemon: RecordingDaemon, args) -> int:
    sessions = daemon.storage.list_sessions()
    if not sessions:
        print("No sessions.")
    for session in sessions:
        count = len(daemon.storage.get_session_recordings(session["id"]))
        print(f"{session['id']:>5}  {session['created_at']}  {format_duration(session['duration']):>10}  "
              f"{session['approval_state']:<9}  {session['session_status']:<7}  {count} recordings")
    return 0


def _cmd_submit(daemon: RecordingDaemon, args) -> int:
    result = daemon.submit_session(args.user_id, args.session_id, on_progress=_print_progress)
    if not result.success:
        print(f"Submission failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Submitted as remote session {result.remote_session_id}, "
          f"{result.points_earned} points earned")
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    return 0


def _cmd_sync(daemon: RecordingDaemon, args) -> int:
    future = daemon.sync(args.user_id)
    if future is None:
        print("Synced recently, skipping")
        return 0
    result = future.result()
    print(f"Synced {result.synced} sessions, skipped {result.skipped}, failed {result.failed}")
    for error in result.errors:
        print(f"  {error}", file=sys.stderr)
    return 0 if result.success else 1


def _cmd_migrate(daemon: RecordingDaemon, args) -> int:
    result = daemon.migration.migrate_to_files()
    print(f"Migrated {result.migrated} recordings, {result.failed} failed")
    for error in result.errors:
        print(f"  recording {error.recording_id}: {error.error}", file=sys.stderr)
    return 0 if result.success else 1


def _cmd_verify(daemon: RecordingDaemon, args) -> int:
    result = daemon.migration.verify()
    print(f"{result.valid}/{result.total} recordings valid, {result.invalid} invalid")
    for detail in result.details:
        print(f"  recording {detail.recording_id}: {detail.error}", file=sys.stderr)
    return 0 if result.success else 1


def _cmd_cleanup(daemon: RecordingDaemon, args) -> int:
    result = daemon.migration.cleanup_legacy(daemon.migration.verify())
    if not result.success:
        print(f"Cleanup refused: {result.error}", file=sys.stderr)
        return 1
    print(f"Cleaned inline data from {result.cleaned} recordings")
    return 0


def _cmd_config(manager: ConfigManager, args) -> int:
    if args.action == "show":
        print(yaml.safe_dump(manager.to_dict(), default_flow_style=False, sort_keys=False), end="")
        return 0

    section = manager.to_dict().get(args.section)
    if not isinstance(section, dict) or args.key not in section:
        print(f"Unknown setting: {args.section}.{args.key}", file=sys.stderr)
        return 1
    value = yaml.safe_load(args.value)
    if manager.update(args.section, args.key, value):
        print(f"{args.section}.{args.key} = {value!r}")
    else:
        print(f"{args.section}.{args.key} unchanged")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="session-recorder", description="Screen session recorder")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Record a new session until interrupted")
    record.add_argument("--kind", choices=SESSION_KINDS, default="passive")
    record.add_argument("--task-id", type=int, help="Task the session belongs to")
    record.set_defaults(handler=_cmd_record)

    subparsers.add_parser("list", help="List local sessions").set_defaults(handler=_cmd_list)

    for name, handler, help_text in (("submit", _cmd_submit, "Submit a session"),
                                     ("sync", _cmd_sync, "Pull remote sessions")):
        sub = subparsers.add_parser(name, help=help_text)
        if name == "submit":
            sub.add_argument("session_id", type=int)
        sub.add_argument("--user-id", required=True, help="Remote user id")
        sub.add_argument("--access-token", default=os.environ.get("SESSION_RECORDER_TOKEN"),
                         help="Backend access token (default: $SESSION_RECORDER_TOKEN)")
        sub.set_defaults(handler=handler)

    subparsers.add_parser("migrate", help="Move inline screenshots to files").set_defaults(handler=_cmd_migrate)
    subparsers.add_parser("verify", help="Check migrated screenshot files").set_defaults(handler=_cmd_verify)
    subparsers.add_parser("cleanup", help="Blank verified inline screenshots").set_defaults(handler=_cmd_cleanup)

    config = subparsers.add_parser("config", help="Show or change config.yaml settings")
    actions = config.add_subparsers(dest="action", required=True)
    actions.add_parser("show", help="Print the effective configuration")
    setter = actions.add_parser("set", help="Change one setting and save it")
    setter.add_argument("section", help="Config section, e.g. sync")
    setter.add_argument("key", help="Setting within the section, e.g. ttl_seconds")
    setter.add_argument("value", help="New value, parsed as YAML")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    manager = ConfigManager(args.config)
    if args.command == "config":
        return _cmd_config(manager, args)

    daemon = RecordingDaemon(manager.config)
    if getattr(args, "access_token", None):
        daemon.backend.set_access_token(args.access_token)

    try:
        return args.handler(daemon, args)
    except (SessionStateError, ValueError, RuntimeError) as e:
        logger.error(str(e))
        return 1
    finally:
        if daemon.running:
            daemon.shutdown()


if __name__ == "__main__":
    sys.exit(main())
