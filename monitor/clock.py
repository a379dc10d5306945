"""Clocks: cancellable one-shot timers and periodic jobs.

``MonitoringClock`` runs on wall time: one-shot delays use ``threading.Timer``
and periodic jobs run on a private ``schedule.Scheduler`` polled by a
background thread. ``ManualClock`` keeps virtual time that only moves when
``advance()`` is called, firing due callbacks synchronously and in due order.

Both hand out ``TimerHandle`` objects. Cancelling a handle is idempotent and a
handle that was cancelled never runs its callback, even if the underlying
timer was already in flight.
"""
import heapq
import itertools
import logging
import threading
import time
from datetime import datetime, timedelta, timezone

import schedule

logger = logging.getLogger("opsmonitor.clock")

_handle_ids = itertools.count(1)


class TimerHandle:
    def __init__(self, clock, callback, args, due_at, interval=None, name=""):
        self.id = next(_handle_ids)
        self.clock = clock
        self.callback = callback
        self.args = args
        self.due_at = due_at
        self.interval = interval
        self.name = name or getattr(callback, "__name__", "timer")
        self.cancelled = False
        self.fired = False
        self._lock = threading.Lock()
        self._timer = None
        self._job = None

    @property
    def periodic(self):
        return self.interval is not None

    @property
    def pending(self):
        return not self.cancelled and (self.periodic or not self.fired)

    def cancel(self):
        return self.clock.cancel(self)

    def _claim(self):
        """Mark a run as started; False if cancelled or a one-shot already ran."""
        with self._lock:
            if self.cancelled or (self.fired and not self.periodic):
                return False
            self.fired = True
            return True

    def _mark_cancelled(self):
        with self._lock:
            if self.cancelled or (self.fired and not self.periodic):
                return False
            self.cancelled = True
            return True

    def __repr__(self):
        state = "cancelled" if self.cancelled else ("fired" if self.fired else "pending")
        return f"<TimerHandle {self.id} {self.name} {state}>"


def _run(handle):
    try:
        handle.callback(*handle.args)
    except Exception as e:
        logger.warning(f"Timer callback {handle.name} failed: {e}", exc_info=True)


class BaseClock:
    def now(self):
        raise NotImplementedError

    def call_later(self, delay_seconds, callback, *args, name=""):
        raise NotImplementedError

    def every(self, interval_seconds, callback, *args, name=""):
        raise NotImplementedError

    def cancel(self, handle):
        """Cancel a pending timer. Returns False when there was nothing to cancel."""
        if handle is None:
            return False
        return handle._mark_cancelled()

    def start(self):
        pass

    def stop(self):
        pass


class ManualClock(BaseClock):
    """Deterministic clock for tests and dry runs."""

    def __init__(self, start=None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._queue = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def now(self):
        return self._now

    def _push(self, handle):
        with self._lock:
            heapq.heappush(self._queue, (handle.due_at, next(self._seq), handle))

    def call_later(self, delay_seconds, callback, *args, name=""):
        due = self._now + timedelta(seconds=max(0.0, delay_seconds))
        handle = TimerHandle(self, callback, args, due, name=name)
        self._push(handle)
        return handle

    def every(self, interval_seconds, callback, *args, name=""):
        if interval_seconds <= 0:
            raise ValueError("interval must be positive")
        due = self._now + timedelta(seconds=interval_seconds)
        handle = TimerHandle(self, callback, args, due, interval=interval_seconds, name=name)
        self._push(handle)
        return handle

    def advance(self, seconds):
        """Move time forward, firing every timer that comes due on the way."""
        target = self._now + timedelta(seconds=seconds)
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if not handle._claim():
                continue
            _run(handle)
            if handle.periodic and not handle.cancelled:
                handle.due_at = due + timedelta(seconds=handle.interval)
                self._push(handle)
        self._now = target
        return self._now

    def pending_count(self):
        with self._lock:
            return sum(1 for _, _, h in self._queue if h.pending)


class MonitoringClock(BaseClock):
    """Wall-clock implementation backed by threading.Timer and schedule."""

    def __init__(self, tick_seconds=1.0):
        self.tick_seconds = tick_seconds
        self._scheduler = schedule.Scheduler()
        self._handles = set()
        self._lock = threading.Lock()
        self._thread = None
        self._running = False

    def now(self):
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds, callback, *args, name=""):
        delay = max(0.0, delay_seconds)
        handle = TimerHandle(self, callback, args, self.now() + timedelta(seconds=delay), name=name)
        timer = threading.Timer(delay, self._fire, args=(handle,))
        timer.daemon = True
        handle._timer = timer
        with self._lock:
            self._handles.add(handle)
        timer.start()
        return handle

    def every(self, interval_seconds, callback, *args, name=""):
        if interval_seconds <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(self, callback, args, self.now() + timedelta(seconds=interval_seconds),
                             interval=interval_seconds, name=name)
        with self._lock:
            handle._job = self._scheduler.every(interval_seconds).seconds.do(self._fire, handle)
            self._handles.add(handle)
        return handle

    def _fire(self, handle):
        if not handle._claim():
            return
        if not handle.periodic:
            with self._lock:
                self._handles.discard(handle)
        _run(handle)

    def cancel(self, handle):
        cancelled = super().cancel(handle)
        if handle is None:
            return False
        if handle._timer is not None:
            handle._timer.cancel()
        with self._lock:
            if handle._job is not None:
                self._scheduler.cancel_job(handle._job)
                handle._job = None
            self._handles.discard(handle)
        return cancelled

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name="monitoring-clock", daemon=True)
        self._thread.start()
        logger.info(f"Clock started (tick {self.tick_seconds}s)")

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            self.cancel(handle)
        logger.info("Clock stopped")

    def _run_loop(self):
        while self._running:
            try:
                self._scheduler.run_pending()
            except Exception as e:
                logger.warning(f"Scheduler loop error: {e}")
            time.sleep(self.tick_seconds)
