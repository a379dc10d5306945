"""Per-rule alert lifecycle: trigger, re-notify, suppress, escalate, acknowledge, resolve.

Each rule owns one ``_RuleState`` guarded by its own lock. Every transition of
that rule's alert (tick, escalation timer, acknowledge, resolve) happens under
the lock, so they are totally ordered. Metric queries happen before the lock
is taken and notifications, actions and events are collected while holding it
and run after it is released, so no lock is ever held across a blocking call.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Optional

from alerts.conditions import ConditionEvaluator
from alerts.escalation import EscalationActions
from alerts.predicates import evaluate_predicate
from models.alerts import Alert
from models.enums import AlertStatus, EventKind
from utils.errors import NotFoundError
from utils.events import (
    ALERT_ACKNOWLEDGED, ALERT_ESCALATED, ALERT_RESOLVED, ALERT_SUPPRESSED,
    ALERT_TRIGGERED, RULE_EVALUATION_FAILED,
)

logger = logging.getLogger("opsmonitor.alerts.lifecycle")

TRIGGERED = "triggered"
RENOTIFIED = "renotified"
REFRESHED = "refreshed"
SUPPRESSED = "suppressed"
RESOLVED = "resolved"
CLEAR = "clear"
DISABLED = "disabled"
ERROR = "error"


@dataclass
class TickResult:
    rule_id: str
    action: str
    value: Optional[float] = None
    condition_met: Optional[bool] = None
    alert: Optional[Alert] = None
    report: object = None
    error: Optional[str] = None


class _RuleState:
    def __init__(self):
        self.lock = threading.RLock()
        self.alert = None
        self.timer = None
        self.next_level = 0
        self.failures = 0


class AlertLifecycleManager:
    def __init__(self, rules, source, dispatcher, clock, bus=None, store=None,
                 suppression=None, evaluator=None, actions=None, meta_alert_after=5):
        self.rules = rules
        self.source = source
        self.dispatcher = dispatcher
        self.clock = clock
        self.bus = bus
        self.store = store
        self.suppression = suppression
        self.evaluator = evaluator or ConditionEvaluator()
        self.actions = actions or EscalationActions(bus)
        self.meta_alert_after = meta_alert_after
        self._states = {}
        self._alerts = {}
        self._lock = threading.Lock()

    # --- State helpers ---

    def _state(self, rule_id):
        with self._lock:
            state = self._states.get(rule_id)
            if state is None:
                state = self._states[rule_id] = _RuleState()
            return state

    def _emit(self, name, payload):
        if self.bus is not None:
            self.bus.emit(name, payload, timestamp=self.clock.now())

    def _persist(self, alert):
        if self.store is None:
            return
        try:
            self.store.save_alert(alert)
        except Exception as e:
            logger.warning(f"Failed to persist alert {alert.id}: {e}")

    def _cancel_timer(self, state):
        if state.timer is not None:
            self.clock.cancel(state.timer)
            state.timer = None

    def _notify(self, alert, rule, kind):
        return lambda: self.dispatcher.dispatch(alert, rule, kind) if self.dispatcher else None

    def _event(self, name, alert, **extra):
        payload = {"alert_id": alert.id, "rule_id": alert.rule_id, "severity": alert.severity.value, **extra}
        return lambda: self._emit(name, payload)

    @staticmethod
    def _run(deferred):
        results = []
        for fn in deferred:
            try:
                results.append(fn())
            except Exception as e:
                logger.error(f"Deferred alert action failed: {e}", exc_info=True)
                results.append(None)
        return results

    # --- Evaluation ---

    def evaluate_rule(self, rule_or_id):
        """Run one evaluation tick for a rule."""
        rule = self.rules.require_rule(rule_or_id) if isinstance(rule_or_id, str) else rule_or_id
        if not rule.enabled:
            return TickResult(rule.id, DISABLED)

        cond = rule.condition
        try:
            value = self.source.query(cond.query, cond.effective_aggregation, cond.time_window)
        except Exception as e:
            return self._record_failure(rule, e)

        self._record_success(rule)
        met = self.evaluator.evaluate(cond, value, rule.epsilon)
        return self.process(rule, value, met)

    def _record_failure(self, rule, error):
        state = self._state(rule.id)
        with state.lock:
            state.failures += 1
            count = state.failures
        logger.error(f"Evaluation failed for rule {rule.id} ({count} consecutive): {error}")
        if count == self.meta_alert_after:
            logger.critical(f"Rule {rule.id} failed {count} consecutive evaluations")
            self._emit(RULE_EVALUATION_FAILED, {
                "rule_id": rule.id,
                "consecutive_failures": count,
                "error": str(error),
            })
        return TickResult(rule.id, ERROR, error=str(error))

    def _record_success(self, rule):
        state = self._state(rule.id)
        with state.lock:
            if state.failures:
                logger.info(f"Rule {rule.id} recovered after {state.failures} failed evaluations")
            state.failures = 0

    def process(self, rule, value, condition_met):
        """Apply one evaluated observation to the rule's state machine."""
        state = self._state(rule.id)
        deferred = []
        notify_index = None

        with state.lock:
            now = self.clock.now()
            alert = state.alert

            if condition_met:
                suppressor = self.suppression.matching_rule(rule) if self.suppression else None
                if suppressor is not None:
                    if alert is not None:
                        alert.last_seen_at = now
                        alert.metric_value = value
                    logger.debug(f"Rule {rule.id} suppressed by '{suppressor.condition}'")
                    deferred.append(lambda: self._emit(ALERT_SUPPRESSED, {
                        "rule_id": rule.id, "condition": suppressor.condition, "metric_value": value,
                    }))
                    action = SUPPRESSED

                elif alert is None:
                    alert = Alert(
                        id=f"alert_{rule.id}_{uuid.uuid4().hex[:8]}",
                        rule_id=rule.id,
                        rule_name=rule.name,
                        severity=rule.severity,
                        status=AlertStatus.ACTIVE,
                        first_triggered_at=now,
                        last_seen_at=now,
                        metric_value=value,
                        threshold=rule.condition.threshold,
                        message=f"{rule.condition.query} = {value} {rule.condition.operator.value} {rule.condition.threshold}",
                    )
                    state.alert = alert
                    state.next_level = 0
                    with self._lock:
                        self._alerts[alert.id] = alert
                    rule.last_triggered_at = now
                    self._arm_next_escalation(rule, state)
                    self._persist(alert)
                    logger.info(f"Alert {alert.id} triggered: {alert.message}")
                    notify_index = len(deferred)
                    deferred.append(self._notify(alert, rule, EventKind.TRIGGERED))
                    deferred.append(self._event(ALERT_TRIGGERED, alert, metric_value=value))
                    action = TRIGGERED

                else:
                    alert.last_seen_at = now
                    alert.metric_value = value
                    action = REFRESHED
                    if alert.status == AlertStatus.ACTIVE and self._renotify_due(rule, now):
                        rule.last_triggered_at = now
                        notify_index = len(deferred)
                        deferred.append(self._notify(alert, rule, EventKind.TRIGGERED))
                        action = RENOTIFIED
                    self._persist(alert)

            elif alert is not None and rule.auto_resolve:
                deferred.extend(self._resolve_locked(state, alert, rule, now))
                action = RESOLVED
            else:
                action = CLEAR

        results = self._run(deferred)
        report = results[notify_index] if notify_index is not None else None
        return TickResult(rule.id, action, value=value, condition_met=condition_met, alert=alert, report=report)

    def _renotify_due(self, rule, now):
        last = rule.last_triggered_at
        return last is None or (now - last).total_seconds() >= rule.frequency

    # --- Escalation ---

    def _arm_next_escalation(self, rule, state):
        chain = rule.escalation_chain()
        if state.next_level >= len(chain):
            state.timer = None
            return
        level = chain[state.next_level]
        elapsed = (self.clock.now() - state.alert.first_triggered_at).total_seconds()
        state.timer = self.clock.call_later(
            max(0.0, level.delay - elapsed),
            self._on_escalation_timer, rule.id, state.alert.id, state.next_level,
            name=f"escalate:{state.alert.id}:{state.next_level}",
        )

    def _on_escalation_timer(self, rule_id, alert_id, level_index):
        state = self._state(rule_id)
        deferred = []
        with state.lock:
            alert = state.alert
            if alert is None or alert.id != alert_id or alert.status != AlertStatus.ACTIVE:
                return
            if state.next_level != level_index:
                return
            state.timer = None

            rule = self.rules.get_rule(rule_id)
            if rule is None or not rule.enabled:
                logger.debug(f"Escalation skipped for {alert_id}: rule disabled or removed")
                return
            chain = rule.escalation_chain()
            if level_index >= len(chain):
                return
            level = chain[level_index]

            if self.suppression is not None and self.suppression.is_suppressed(rule):
                logger.debug(f"Escalation of {alert_id} deferred while suppressed")
                state.timer = self.clock.call_later(
                    rule.condition.evaluation_interval,
                    self._on_escalation_timer, rule_id, alert_id, level_index,
                    name=f"escalate:{alert_id}:{level_index}",
                )
                return

            now = self.clock.now()
            context = {
                "rule_id": rule.id,
                "severity": alert.severity,
                "duration": (now - alert.first_triggered_at).total_seconds(),
                "level": alert.escalation_level,
                "metric_value": alert.metric_value if alert.metric_value is not None else 0.0,
            }
            state.next_level += 1
            if not evaluate_predicate(level.condition, context):
                logger.info(f"Escalation level {level_index + 1} for {alert_id} skipped: '{level.condition}' not met")
                self._arm_next_escalation(rule, state)
                return

            alert.escalation_level += 1
            self._arm_next_escalation(rule, state)
            self._persist(alert)
            logger.warning(f"Alert {alert_id} escalated to level {alert.escalation_level}: {level.actions}")

            for name in level.actions:
                deferred.append(lambda name=name: self.actions.run(name, alert, rule))
            deferred.append(self._notify(alert, rule, EventKind.ESCALATED))
            deferred.append(self._event(ALERT_ESCALATED, alert, level=alert.escalation_level,
                                        actions=list(level.actions)))
        self._run(deferred)

    # --- Operator actions ---

    def _locate(self, alert_id):
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return self._state(alert.rule_id), alert

    def acknowledge(self, alert_id, by=""):
        """Active → Acknowledged; cancels pending escalations. No-op otherwise."""
        state, alert = self._locate(alert_id)
        deferred = []
        with state.lock:
            if alert.status != AlertStatus.ACTIVE:
                return alert
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = self.clock.now()
            alert.acknowledged_by = by
            if state.alert is alert:
                self._cancel_timer(state)
            self._persist(alert)
            logger.info(f"Alert {alert_id} acknowledged{f' by {by}' if by else ''}")
            deferred.append(self._event(ALERT_ACKNOWLEDGED, alert, acknowledged_by=by))
        self._run(deferred)
        return alert

    def resolve(self, alert_id):
        """Active|Acknowledged → Resolved. Resolving a resolved alert is a no-op."""
        state, alert = self._locate(alert_id)
        with state.lock:
            if alert.status == AlertStatus.RESOLVED:
                return alert
            rule = self.rules.get_rule(alert.rule_id)
            deferred = self._resolve_locked(state, alert, rule, self.clock.now())
        self._run(deferred)
        return alert

    def _resolve_locked(self, state, alert, rule, now):
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now
        if state.alert is alert:
            self._cancel_timer(state)
            state.alert = None
            state.next_level = 0
        self._persist(alert)
        logger.info(f"Alert {alert.id} resolved")
        deferred = []
        if rule is not None:
            deferred.append(self._notify(alert, rule, EventKind.RESOLVED))
        deferred.append(self._event(ALERT_RESOLVED, alert))
        return deferred

    # --- Queries ---

    def get_alert(self, alert_id):
        return self._locate(alert_id)[1]

    def active_alert(self, rule_id):
        state = self._state(rule_id)
        with state.lock:
            return state.alert

    def open_alerts(self):
        with self._lock:
            return [a for a in self._alerts.values() if a.is_open]

    def all_alerts(self):
        with self._lock:
            return list(self._alerts.values())

    def pending_escalation(self, rule_id):
        state = self._state(rule_id)
        with state.lock:
            return state.timer

    def consecutive_failures(self, rule_id):
        return self._state(rule_id).failures

    def prune_resolved(self, retention_seconds):
        """Forget resolved alerts older than the retention period; returns how many."""
        now = self.clock.now()
        with self._lock:
            stale = [
                a.id for a in self._alerts.values()
                if a.status == AlertStatus.RESOLVED and a.resolved_at
                and (now - a.resolved_at).total_seconds() > retention_seconds
            ]
            for alert_id in stale:
                del self._alerts[alert_id]
        if stale:
            logger.debug(f"Pruned {len(stale)} resolved alerts")
        return len(stale)

    def shutdown(self):
        with self._lock:
            states = list(self._states.values())
        for state in states:
            with state.lock:
                self._cancel_timer(state)
