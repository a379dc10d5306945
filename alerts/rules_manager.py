"""Alert rules loading and management."""
import logging
import threading
from pathlib import Path

import yaml

from alerts.conditions import ConditionEvaluator
from alerts.predicates import parse_predicate
from models.alerts import (
    AlertCondition, AlertRule, EscalationRule, MetricQuery,
    NotificationChannelRef, SuppressionRule,
)
from models.enums import Aggregation, ChannelType, Severity
from utils.errors import ConfigurationError, NotFoundError
from utils.formatters import parse_duration

logger = logging.getLogger("opsmonitor.alerts.rules")


def _duration(raw, field_name, rule_id):
    try:
        return parse_duration(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Rule {rule_id}: invalid {field_name} {raw!r}")


def _enum(enum_cls, raw, field_name, rule_id):
    try:
        return enum_cls(str(raw).lower())
    except ValueError:
        raise ConfigurationError(f"Rule {rule_id}: invalid {field_name} {raw!r}")


def _number(raw, field_name, rule_id, minimum=0.0):
    if isinstance(raw, bool):
        raise ConfigurationError(f"Rule {rule_id}: invalid {field_name} {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Rule {rule_id}: invalid {field_name} {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"Rule {rule_id}: {field_name} must be >= {minimum:g} (got {raw!r})")
    return value


def _entries(raw, keys, field_name, rule_id):
    """List of mappings under the first present key; None means empty."""
    value = None
    for key in keys:
        if key in raw:
            value = raw[key]
            break
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"Rule {rule_id}: {field_name} must be a list")
    for entry in value:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Rule {rule_id}: each {field_name} entry must be a mapping (got {entry!r})")
    return value


def _string_list(raw, field_name, rule_id):
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if not isinstance(raw, list):
        raise ConfigurationError(f"Rule {rule_id}: {field_name} must be a string or a list")
    return [str(item) for item in raw]


def parse_rule(raw, default_interval=30):
    """Build an AlertRule from a YAML/dict definition, raising ConfigurationError."""
    if not isinstance(raw, dict) or not raw.get("id"):
        raise ConfigurationError(f"Rule definition needs an id: {raw!r}")
    rule_id = raw["id"]

    cond = raw.get("condition") or {}
    if not isinstance(cond, dict):
        raise ConfigurationError(f"Rule {rule_id}: condition must be a mapping")
    if "query" not in cond:
        raise ConfigurationError(f"Rule {rule_id}: condition.query is required")
    if "threshold" not in cond:
        raise ConfigurationError(f"Rule {rule_id}: condition.threshold is required")

    condition = AlertCondition(
        query=MetricQuery.parse(cond["query"]),
        operator=cond.get("operator", "gt"),
        threshold=cond["threshold"],
        aggregation=_enum(Aggregation, cond.get("aggregation", "avg"), "aggregation", rule_id),
        time_window=_duration(cond.get("time_window", 300), "time_window", rule_id),
        evaluation_interval=_duration(cond.get("evaluation_interval", default_interval), "evaluation_interval", rule_id),
        data_source=cond.get("data_source", "metrics"),
    )

    channels = []
    seen_ids = set()
    for i, c in enumerate(_entries(raw, ("channels", "notifications"), "channel", rule_id)):
        ctype = _enum(ChannelType, c.get("type", ""), "channel type", rule_id)
        channel_id = c.get("id") or ctype.value
        if channel_id in seen_ids:
            channel_id = f"{channel_id}-{i}"
        seen_ids.add(channel_id)
        channels.append(NotificationChannelRef(
            id=channel_id,
            type=ctype,
            recipients=_string_list(c.get("recipients"), "channel recipients", rule_id),
            template=c.get("template", "default"),
            enabled=c.get("enabled", True),
            rate_limit_minutes=_number(c.get("rate_limit_minutes", 15), "rate_limit_minutes", rule_id),
        ))

    suppressions = []
    for s in _entries(raw, ("suppression", "suppression_rules"), "suppression", rule_id):
        parse_predicate(s.get("condition", ""))
        suppressions.append(SuppressionRule(
            condition=s.get("condition", ""),
            duration=_duration(s.get("duration", 3600), "suppression duration", rule_id),
            enabled=s.get("enabled", True),
        ))

    escalations = []
    for e in _entries(raw, ("escalation", "escalation_rules"), "escalation", rule_id):
        parse_predicate(e.get("condition", ""))
        delay = _duration(e.get("delay", 900), "escalation delay", rule_id)
        if delay < 0:
            raise ConfigurationError(f"Rule {rule_id}: escalation delay must be >= 0")
        escalations.append(EscalationRule(
            delay=delay,
            condition=e.get("condition", ""),
            actions=_string_list(e.get("actions"), "escalation actions", rule_id),
            enabled=e.get("enabled", True),
        ))

    epsilon = raw.get("epsilon")
    rule = AlertRule(
        id=rule_id,
        name=raw.get("name", rule_id),
        description=raw.get("description", ""),
        condition=condition,
        severity=_enum(Severity, raw.get("severity", "medium"), "severity", rule_id),
        frequency=_duration(raw.get("frequency", 300), "frequency", rule_id),
        enabled=raw.get("enabled", True),
        channels=channels,
        suppression_rules=suppressions,
        escalation_rules=escalations,
        auto_resolve=raw.get("auto_resolve", False),
        epsilon=None if epsilon is None else _number(epsilon, "epsilon", rule_id),
    )
    return validate_rule(rule)


def validate_rule(rule):
    if not rule.id:
        raise ConfigurationError("Rule id is required")
    if rule.condition is None:
        raise ConfigurationError(f"Rule {rule.id}: condition is required")
    try:
        ConditionEvaluator().validate(rule.condition)
    except ConfigurationError as e:
        raise ConfigurationError(f"Rule {rule.id}: {e}")
    if rule.frequency < 0:
        raise ConfigurationError(f"Rule {rule.id}: frequency must be >= 0")
    for s in rule.suppression_rules:
        parse_predicate(s.condition)
    for e in rule.escalation_rules:
        parse_predicate(e.condition)
    return rule


class RulesManager:
    """YAML-backed rule store. Invalid rules in the file are logged and skipped."""

    def __init__(self, rules_path="config/alert_rules.yaml", autoload=True, default_interval=30):
        self.rules_path = Path(rules_path) if rules_path else None
        self.default_interval = default_interval
        self._rules = {}
        self._lock = threading.RLock()
        self.load_errors = []
        if autoload and self.rules_path:
            self.load()

    def load(self):
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            return
        with open(self.rules_path) as f:
            data = yaml.safe_load(f) or {}

        rules = {}
        self.load_errors = []
        entries = data.get("rules") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.error(f"{self.rules_path} has no 'rules' list")
            self.load_errors.append("Rules file must contain a 'rules' list")
            entries = []
        for raw in entries:
            try:
                rule = parse_rule(raw, self.default_interval)
            except ConfigurationError as e:
                logger.warning(f"Skipping invalid rule: {e}")
                self.load_errors.append(str(e))
                continue
            if rule.id in rules:
                logger.warning(f"Duplicate rule id {rule.id}, keeping the first definition")
                self.load_errors.append(f"Duplicate rule id {rule.id}")
                continue
            rules[rule.id] = rule
        with self._lock:
            self._rules = rules
        logger.info(f"Loaded {len(rules)} alert rules from {self.rules_path}")

    def add_rule(self, rule):
        """Register a rule (AlertRule or dict). Raises ConfigurationError."""
        rule = parse_rule(rule, self.default_interval) if isinstance(rule, dict) else validate_rule(rule)
        with self._lock:
            if rule.id in self._rules:
                raise ConfigurationError(f"Rule {rule.id} already exists")
            self._rules[rule.id] = rule
        return rule

    def update_rule(self, rule):
        rule = parse_rule(rule, self.default_interval) if isinstance(rule, dict) else validate_rule(rule)
        with self._lock:
            existing = self._rules.get(rule.id)
            if existing is None:
                raise NotFoundError(f"Rule {rule.id} not found")
            rule.last_triggered_at = existing.last_triggered_at
            self._rules[rule.id] = rule
        return rule

    def remove_rule(self, rule_id):
        with self._lock:
            if self._rules.pop(rule_id, None) is None:
                raise NotFoundError(f"Rule {rule_id} not found")

    def set_enabled(self, rule_id, enabled):
        rule = self.require_rule(rule_id)
        rule.enabled = enabled
        return rule

    def get_enabled_rules(self):
        with self._lock:
            return [r for r in self._rules.values() if r.enabled]

    def get_rule(self, rule_id):
        with self._lock:
            return self._rules.get(rule_id)

    def require_rule(self, rule_id):
        rule = self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    def get_all_rules(self):
        with self._lock:
            return list(self._rules.values())
