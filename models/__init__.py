"""Data models."""
from models.enums import (
    Operator, Aggregation, Severity, AlertStatus, ChannelType, EventKind,
    DispatchOutcome, Trend, TestStatus, TestType,
)
from models.alerts import (
    MetricQuery, AlertCondition, NotificationChannelRef, SuppressionRule,
    EscalationRule, AlertRule, Alert,
)
from models.capacity import CapacityFactor, CapacityRecommendation, CapacityRisk, CapacityCost, CapacityPlan
from models.performance import (
    ResponseTimeMetrics, TestBaseline, TestResult, PerformanceTest,
    RegressionThresholds, RegressionVerdict, MetricViolation,
)
