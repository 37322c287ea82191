"""
Keyed debounce scheduler.

Coalesces bursts of triggers for the same key into one delayed run.
Different keys are independent. Used to regenerate per-session metadata
snapshots after recording and comment mutations.
"""

from typing import Callable, Dict, Hashable, List, Optional, Tuple
import logging
import threading

logger = logging.getLogger(__name__)


class DebouncedScheduler:
    """
    schedule(key, delay, task) cancels any pending task for key and arms a new one.

    Usage:
        scheduler = DebouncedScheduler()
        scheduler.schedule(session_id, 1.5, lambda: refresh(session_id))
        ...
        scheduler.drain_all()  # at shutdown, runs whatever is still pending
    """

    def __init__(self, timer_factory: Callable[..., threading.Timer] = threading.Timer):
        """
        Args:
            timer_factory: Builds the timer, called as timer_factory(delay, fn, args=...).
        """
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: Dict[Hashable, Tuple[threading.Timer, Callable[[], None], object]] = {}

    def schedule(self, key: Hashable, delay: float, task: Callable[[], None]) -> None:
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous:
                previous[0].cancel()

            token = object()
            timer = self._timer_factory(delay, self._fire, args=(key, token))
            timer.daemon = True
            self._pending[key] = (timer, task, token)
            timer.start()

    def cancel(self, key: Hashable) -> bool:
        """Drop the pending task for key. Returns True if one was pending."""
        with self._lock:
            entry = self._pending.pop(key, None)
        if entry:
            entry[0].cancel()
            return True
        return False

    def flush(self, key: Hashable) -> bool:
        """Run the pending task for key now, on the calling thread."""
        task = self._take(key)
        if task is None:
            return False
        self._run(key, task)
        return True

    def drain_all(self) -> int:
        """Synchronously run every pending task. Returns how many ran."""
        with self._lock:
            entries = list(self._pending.items())
            self._pending.clear()

        for key, (timer, task, _) in entries:
            timer.cancel()
            self._run(key, task)
        if entries:
            logger.info(f"Drained {len(entries)} pending task(s)")
        return len(entries)

    def pending_keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._pending)

    def _take(self, key: Hashable) -> Optional[Callable[[], None]]:
        with self._lock:
            entry = self._pending.pop(key, None)
        if entry is None:
            return None
        entry[0].cancel()
        return entry[1]

    def _fire(self, key: Hashable, token: object) -> None:
        with self._lock:
            entry = self._pending.get(key)
            # A newer schedule() replaced this timer after it started firing
            if entry is None or entry[2] is not token:
                return
            del self._pending[key]
        self._run(key, entry[1])

    @staticmethod
    def _run(key: Hashable, task: Callable[[], None]) -> None:
        try:
            task()
        except Exception as e:
            logger.error(f"Scheduled task for {key!r} failed: {e}")
