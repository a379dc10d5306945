"""Fixed-window rate limiter keyed by arbitrary tuples."""
import threading


class FixedWindowLimiter:
    """One attempt per key per window, thread-safe.

    The first attempt for a key opens the window; every further attempt is
    refused until ``window_seconds`` have passed since that first attempt.
    Time is supplied by the caller so the limiter follows whichever clock
    drives the engine.
    """

    def __init__(self):
        self._opened = {}
        self._lock = threading.Lock()

    def try_acquire(self, key, window_seconds, now):
        """Return True and open a new window if ``key`` is free at ``now``."""
        with self._lock:
            opened_at = self._opened.get(key)
            if opened_at is not None and window_seconds > 0:
                if (now - opened_at).total_seconds() < window_seconds:
                    return False
            self._opened[key] = now
            return True

    def remaining(self, key, window_seconds, now):
        """Seconds left in the window for ``key`` (0 when free)."""
        with self._lock:
            opened_at = self._opened.get(key)
        if opened_at is None:
            return 0.0
        left = window_seconds - (now - opened_at).total_seconds()
        return max(0.0, left)

    def reset(self, key=None):
        with self._lock:
            if key is None:
                self._opened.clear()
            else:
                self._opened.pop(key, None)
