"""In-process event bus for engine notifications."""
import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger("opsmonitor.events")

ALERT_TRIGGERED = "alert.triggered"
ALERT_ESCALATED = "alert.escalated"
ALERT_ACKNOWLEDGED = "alert.acknowledged"
ALERT_RESOLVED = "alert.resolved"
ALERT_SUPPRESSED = "alert.suppressed"
CAPACITY_THRESHOLD_EXCEEDED = "capacity.threshold_exceeded"
CAPACITY_PLAN_UPDATED = "capacity.plan_updated"
PERFORMANCE_REGRESSION_DETECTED = "performance.regression_detected"
PERFORMANCE_TEST_COMPLETED = "performance.test_completed"
RULE_EVALUATION_FAILED = "rule.evaluation_failed"
AUTOMATION_AUTO_SCALE = "automation.auto_scale"


class EventBus:
    """Publish/subscribe by event name; ``"*"`` subscribes to everything.

    Subscribers run synchronously on the emitting thread. A failing
    subscriber is logged and never affects the emitter or other subscribers.
    """

    def __init__(self, keep_history=0):
        self._subscribers = {}
        self._lock = threading.Lock()
        self._keep = keep_history
        self.history = []

    def subscribe(self, event_name, callback):
        with self._lock:
            self._subscribers.setdefault(event_name, []).append(callback)

    def unsubscribe(self, event_name, callback):
        with self._lock:
            callbacks = self._subscribers.get(event_name, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def emit(self, event_name, payload=None, timestamp=None):
        """Deliver an event. ``timestamp`` is added to the payload as ISO text."""
        payload = dict(payload or {})
        ts = timestamp or datetime.now(timezone.utc)
        payload.setdefault("timestamp", ts.isoformat() if hasattr(ts, "isoformat") else str(ts))

        with self._lock:
            callbacks = list(self._subscribers.get(event_name, [])) + list(self._subscribers.get("*", []))
            if self._keep:
                self.history.append((event_name, payload))
                if len(self.history) > self._keep:
                    del self.history[: len(self.history) - self._keep]

        logger.debug(f"event {event_name}: {payload}")
        for cb in callbacks:
            try:
                cb(event_name, payload)
            except Exception as e:
                logger.warning(f"Event subscriber error for {event_name}: {e}")
        return payload

    def events(self, event_name=None):
        """Recorded (name, payload) pairs, optionally filtered by name."""
        with self._lock:
            if event_name is None:
                return list(self.history)
            return [e for e in self.history if e[0] == event_name]
