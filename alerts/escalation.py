"""Escalation actions executed when an alert stays unacknowledged."""
import logging

from utils.events import AUTOMATION_AUTO_SCALE

logger = logging.getLogger("opsmonitor.alerts.escalation")


class EscalationActions:
    """Registry of named escalation actions.

    Handlers are called as ``handler(alert, rule)``. The built-ins hand the
    work to downstream automation by emitting an event; register a custom
    handler to act directly. Unknown action names are logged and skipped.
    """

    def __init__(self, bus=None):
        self.bus = bus
        self._handlers = {
            "page_on_call": self._page_on_call,
            "create_incident": self._create_incident,
            "auto_scale": self._auto_scale,
            "notify_wider_audience": self._notify_wider_audience,
        }

    def register(self, name, handler):
        self._handlers[name] = handler

    def names(self):
        return sorted(self._handlers)

    def run(self, action, alert, rule):
        handler = self._handlers.get(action)
        if handler is None:
            logger.warning(f"Unknown escalation action: {action}")
            return False
        try:
            handler(alert, rule)
            return True
        except Exception as e:
            logger.error(f"Escalation action {action} failed for {alert.id}: {e}")
            return False

    def _emit(self, name, alert):
        if self.bus is not None:
            self.bus.emit(name, {
                "alert_id": alert.id,
                "rule_id": alert.rule_id,
                "severity": alert.severity.value,
                "level": alert.escalation_level,
            })

    def _page_on_call(self, alert, rule):
        logger.warning(f"Paging on-call for alert {alert.id} ({rule.name})")
        self._emit("escalation.page_on_call", alert)

    def _create_incident(self, alert, rule):
        logger.warning(f"Creating incident for alert {alert.id} ({rule.name})")
        self._emit("escalation.create_incident", alert)

    def _auto_scale(self, alert, rule):
        logger.warning(f"Triggering auto-scale for alert {alert.id} ({rule.name})")
        self._emit(AUTOMATION_AUTO_SCALE, alert)

    def _notify_wider_audience(self, alert, rule):
        logger.warning(f"Widening notification audience for alert {alert.id} ({rule.name})")
        self._emit("escalation.notify_wider_audience", alert)
