"""Operational flags and suppression-rule matching."""
import logging
import threading

from alerts.predicates import evaluate_predicate

logger = logging.getLogger("opsmonitor.alerts.suppression")


class SuppressionState:
    """Operational flags (e.g. ``maintenance_mode``) raised by operators.

    A suppression rule only sees flags raised less than its ``duration``
    seconds ago, so every suppression is time-boxed even if nobody clears
    the flag.
    """

    def __init__(self, clock):
        self.clock = clock
        self._flags = {}
        self._lock = threading.Lock()

    def raise_flag(self, name, value=True):
        with self._lock:
            self._flags[name] = (value, self.clock.now())
        logger.info(f"Flag raised: {name}={value}")

    def clear_flag(self, name):
        with self._lock:
            removed = self._flags.pop(name, None)
        if removed is not None:
            logger.info(f"Flag cleared: {name}")

    def flags(self):
        with self._lock:
            return {k: v for k, (v, _) in self._flags.items()}

    def _context(self, max_age, rule):
        now = self.clock.now()
        with self._lock:
            ctx = {
                name: value
                for name, (value, raised_at) in self._flags.items()
                if (now - raised_at).total_seconds() < max_age
            }
        ctx.setdefault("rule_id", rule.id)
        ctx.setdefault("severity", rule.severity)
        return ctx

    def matching_rule(self, rule):
        """Return the first enabled SuppressionRule of ``rule`` that currently holds."""
        for sr in rule.suppression_rules:
            if not sr.enabled or not sr.condition:
                continue
            if evaluate_predicate(sr.condition, self._context(sr.duration, rule)):
                return sr
        return None

    def is_suppressed(self, rule):
        return self.matching_rule(rule) is not None
