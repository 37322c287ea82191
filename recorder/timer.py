"""
Wall-clock accounting for the active recording session.

Tracks one session at a time through idle -> running <-> paused -> idle.
The timer has no persistence of its own; callers store the snapshot
returned by stop() through RecordingStorage.update_duration().
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import threading
import time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerSnapshot:
    """Final (session_id, elapsed) pair returned when a timer stops"""
    session_id: Optional[int]
    elapsed_seconds: int


class SessionTimer:
    """
    In-memory timer for the single active session.

    Usage:
        timer = SessionTimer()
        timer.begin(session_id)
        timer.pause()
        timer.resume()
        snapshot = timer.stop()
        storage.update_duration(snapshot.session_id, snapshot.elapsed_seconds)

    Mis-sequenced calls (resume while idle, pause twice) are ignored.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            clock: Returns the current instant in seconds. Defaults to time.monotonic.
        """
        self._clock = clock
        self._lock = threading.Lock()
        self._session_id: Optional[int] = None
        self._started_at: Optional[float] = None
        self._paused_at: Optional[float] = None
        self._paused_total = 0.0

    @property
    def session_id(self) -> Optional[int]:
        with self._lock:
            return self._session_id

    @property
    def state(self) -> str:
        """One of 'idle', 'running' or 'paused'."""
        with self._lock:
            if self._started_at is None:
                return "idle"
            return "paused" if self._paused_at is not None else "running"

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    def begin(self, session_id: int) -> None:
        """Start timing session_id, discarding any previous timer state."""
        with self._lock:
            if self._session_id is not None and self._session_id != session_id:
                logger.debug(f"Discarding timer state of session {self._session_id}")
            self._session_id = session_id
            self._started_at = self._clock()
            self._paused_at = None
            self._paused_total = 0.0

    def pause(self) -> None:
        with self._lock:
            if self._started_at is not None and self._paused_at is None:
                self._paused_at = self._clock()

    def resume(self) -> None:
        with self._lock:
            if self._paused_at is not None:
                self._paused_total += self._clock() - self._paused_at
                self._paused_at = None

    def elapsed_seconds(self) -> int:
        with self._lock:
            return self._elapsed_locked()

    def _elapsed_locked(self) -> int:
        if self._started_at is None:
            return 0
        now = self._clock()
        paused = self._paused_total
        if self._paused_at is not None:
            paused += now - self._paused_at
        total = int((now - self._started_at) // 1)
        return max(0, total - int(paused // 1))

    def stop(self) -> TimerSnapshot:
        """Return the final snapshot and reset to idle.

        An idle timer returns TimerSnapshot(None, 0).
        """
        with self._lock:
            snapshot = TimerSnapshot(self._session_id, self._elapsed_locked())
            self._session_id = None
            self._started_at = None
            self._paused_at = None
            self._paused_total = 0.0
            return snapshot
