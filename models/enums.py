"""Enums for operators, severities, statuses and channel types."""
from enum import Enum


class Operator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"
    NE = "ne"


# Symbolic spellings accepted in rule files
OPERATOR_ALIASES = {
    ">": Operator.GT,
    "<": Operator.LT,
    "=": Operator.EQ,
    "==": Operator.EQ,
    ">=": Operator.GTE,
    "≥": Operator.GTE,
    "<=": Operator.LTE,
    "≤": Operator.LTE,
    "!=": Operator.NE,
    "≠": Operator.NE,
}


class Aggregation(str, Enum):
    AVG = "avg"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    RATE = "rate"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
    WEBHOOK = "webhook"
    PAGERDUTY = "pagerduty"
    CONSOLE = "console"
    FILE = "file"


class EventKind(str, Enum):
    TRIGGERED = "triggered"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    NO_TRANSPORT = "no_transport"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class TestStatus(str, Enum):
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TestType(str, Enum):
    __test__ = False

    LOAD = "load"
    STRESS = "stress"
    SPIKE = "spike"
    VOLUME = "volume"
    ENDURANCE = "endurance"
    REGRESSION = "regression"
