"""Dataclasses for alert rules, conditions and live alerts."""
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from models.enums import Aggregation, AlertStatus, ChannelType, Operator, Severity
from utils.errors import ConfigurationError

_QUERY_RE = re.compile(
    r"^\s*(?:(?P<agg>[a-z]+)\(\s*(?P<wrapped>[A-Za-z_:][\w:.]*)\s*\)|(?P<bare>[A-Za-z_:][\w:.]*))"
    r"\s*(?:\{(?P<filters>[^}]*)\})?\s*$"
)


@dataclass(frozen=True)
class MetricQuery:
    """Typed metric expression: ``avg(response_time){region="eu"}``."""
    metric: str
    aggregation: Optional[Aggregation] = None
    filters: tuple = ()

    @classmethod
    def parse(cls, text):
        if isinstance(text, MetricQuery):
            return text
        match = _QUERY_RE.match(str(text or ""))
        if not match:
            raise ConfigurationError(f"Malformed metric query: {text!r}")

        agg = None
        if match.group("agg"):
            try:
                agg = Aggregation(match.group("agg"))
            except ValueError:
                raise ConfigurationError(f"Unknown aggregation {match.group('agg')!r} in query {text!r}")

        filters = []
        raw_filters = (match.group("filters") or "").strip()
        if raw_filters:
            for part in raw_filters.split(","):
                if "=" not in part:
                    raise ConfigurationError(f"Malformed filter {part.strip()!r} in query {text!r}")
                key, value = part.split("=", 1)
                filters.append((key.strip(), value.strip().strip('"').strip("'")))

        return cls(
            metric=match.group("wrapped") or match.group("bare"),
            aggregation=agg,
            filters=tuple(sorted(filters)),
        )

    @property
    def filter_dict(self):
        return dict(self.filters)

    def __str__(self):
        body = f"{self.aggregation.value}({self.metric})" if self.aggregation else self.metric
        if self.filters:
            body += "{" + ",".join(f'{k}="{v}"' for k, v in self.filters) + "}"
        return body


@dataclass
class AlertCondition:
    query: MetricQuery
    operator: Operator = Operator.GT
    threshold: float = 0.0
    aggregation: Aggregation = Aggregation.AVG
    time_window: float = 300.0  # seconds
    evaluation_interval: float = 30.0  # seconds
    data_source: str = "metrics"

    @property
    def effective_aggregation(self):
        return self.query.aggregation or self.aggregation


@dataclass
class NotificationChannelRef:
    id: str = ""
    type: ChannelType = ChannelType.EMAIL
    recipients: list = field(default_factory=list)
    template: str = "default"
    enabled: bool = True
    rate_limit_minutes: float = 15.0


@dataclass
class SuppressionRule:
    condition: str = ""
    duration: float = 3600.0  # seconds a raised flag keeps suppressing
    enabled: bool = True


@dataclass
class EscalationRule:
    delay: float = 900.0  # seconds since first trigger
    condition: str = ""
    actions: list = field(default_factory=list)
    enabled: bool = True


@dataclass
class AlertRule:
    id: str = ""
    name: str = ""
    description: str = ""
    condition: Optional[AlertCondition] = None
    severity: Severity = Severity.MEDIUM
    frequency: float = 300.0  # minimum seconds between re-notifications
    enabled: bool = True
    channels: list = field(default_factory=list)
    suppression_rules: list = field(default_factory=list)
    escalation_rules: list = field(default_factory=list)
    auto_resolve: bool = False
    epsilon: Optional[float] = None
    created_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None

    def escalation_chain(self):
        """Enabled escalation levels ordered by delay."""
        return sorted((e for e in self.escalation_rules if e.enabled), key=lambda e: e.delay)


@dataclass
class Alert:
    id: str = ""
    rule_id: str = ""
    rule_name: str = ""
    severity: Severity = Severity.MEDIUM
    status: AlertStatus = AlertStatus.ACTIVE
    first_triggered_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    acknowledged_by: str = ""
    escalation_level: int = 0
    metric_value: Optional[float] = None
    threshold: float = 0.0
    message: str = ""

    @property
    def is_open(self):
        return self.status != AlertStatus.RESOLVED

    def to_dict(self):
        def iso(dt):
            return dt.isoformat() if dt else None
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "status": self.status.value,
            "first_triggered_at": iso(self.first_triggered_at),
            "last_seen_at": iso(self.last_seen_at),
            "acknowledged_at": iso(self.acknowledged_at),
            "resolved_at": iso(self.resolved_at),
            "acknowledged_by": self.acknowledged_by,
            "escalation_level": self.escalation_level,
            "metric_value": self.metric_value,
            "threshold": self.threshold,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, d):
        def parse(ts):
            return datetime.fromisoformat(ts) if isinstance(ts, str) else ts
        return cls(
            id=d["id"],
            rule_id=d.get("rule_id", ""),
            rule_name=d.get("rule_name", ""),
            severity=Severity(d.get("severity", "medium")),
            status=AlertStatus(d.get("status", "active")),
            first_triggered_at=parse(d.get("first_triggered_at")),
            last_seen_at=parse(d.get("last_seen_at")),
            acknowledged_at=parse(d.get("acknowledged_at")),
            resolved_at=parse(d.get("resolved_at")),
            acknowledged_by=d.get("acknowledged_by") or "",
            escalation_level=d.get("escalation_level", 0) or 0,
            metric_value=d.get("metric_value"),
            threshold=d.get("threshold", 0.0) or 0.0,
            message=d.get("message") or "",
        )
