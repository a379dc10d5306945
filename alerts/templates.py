"""Notification message templates."""
from dataclasses import dataclass, field

from models.enums import EventKind
from utils.formatters import format_duration


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    severity: str
    event_kind: str
    payload: dict = field(default_factory=dict, hash=False, compare=False)


DEFAULT_TEMPLATES = {
    "default": {
        EventKind.TRIGGERED: (
            "[{severity_upper}] {rule_name}",
            "{rule_name}: {query} = {value} ({operator} {threshold}). {description}",
        ),
        EventKind.ESCALATED: (
            "[{severity_upper}] Escalated to level {level}: {rule_name}",
            "{rule_name} has been active for {active_for} without acknowledgement. "
            "Current value {value} ({operator} {threshold}).",
        ),
        EventKind.RESOLVED: (
            "[RESOLVED] {rule_name}",
            "{rule_name} resolved after {active_for}.",
        ),
    },
    "short": {
        EventKind.TRIGGERED: ("{rule_name}", "[{severity_upper}] {rule_name}: {value} {operator} {threshold}"),
        EventKind.ESCALATED: ("{rule_name}", "[{severity_upper}] L{level} {rule_name} unacknowledged for {active_for}"),
        EventKind.RESOLVED: ("{rule_name}", "[RESOLVED] {rule_name}"),
    },
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


def _fmt_value(value):
    if value is None:
        return "n/a"
    return f"{value:.2f}" if isinstance(value, float) else str(value)


def render_message(alert, rule, event_kind, template="default", templates=None, now=None):
    """Render subject/body for ``alert`` using a named template.

    Unknown template names fall back to ``default``; unknown placeholders
    render as empty strings.
    """
    catalog = templates or DEFAULT_TEMPLATES
    event_kind = EventKind(event_kind)
    chosen = catalog.get(template) or catalog.get("default") or DEFAULT_TEMPLATES["default"]
    subject_tpl, body_tpl = chosen.get(event_kind) or DEFAULT_TEMPLATES["default"][event_kind]

    active_for = None
    if alert.first_triggered_at and now:
        active_for = (now - alert.first_triggered_at).total_seconds()

    facts = _Blank(
        alert_id=alert.id,
        rule_id=rule.id,
        rule_name=rule.name,
        description=rule.description,
        severity=alert.severity.value,
        severity_upper=alert.severity.value.upper(),
        status=alert.status.value,
        level=alert.escalation_level,
        value=_fmt_value(alert.metric_value),
        threshold=_fmt_value(rule.condition.threshold if rule.condition else alert.threshold),
        operator=rule.condition.operator.value if rule.condition else "",
        query=str(rule.condition.query) if rule.condition else "",
        active_for=format_duration(active_for) if active_for is not None else "n/a",
        event=event_kind.value,
    )
    payload = {
        "alert_id": alert.id,
        "rule_id": rule.id,
        "rule_name": rule.name,
        "severity": alert.severity.value,
        "status": alert.status.value,
        "event": event_kind.value,
        "escalation_level": alert.escalation_level,
        "metric_value": alert.metric_value,
        "threshold": rule.condition.threshold if rule.condition else alert.threshold,
        "first_triggered_at": alert.first_triggered_at.isoformat() if alert.first_triggered_at else None,
    }
    return RenderedMessage(
        subject=subject_tpl.format_map(facts),
        body=body_tpl.format_map(facts),
        severity=alert.severity.value,
        event_kind=event_kind.value,
        payload=payload,
    )
