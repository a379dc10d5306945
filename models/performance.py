"""Dataclasses for performance tests, results, baselines and verdicts."""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from models.enums import TestStatus, TestType


@dataclass(frozen=True)
class ResponseTimeMetrics:
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True)
class TestBaseline:
    __test__ = False

    response_time: float = 0.0  # avg ms
    throughput: float = 0.0  # requests/s
    error_rate: float = 0.0  # percent
    resource_usage: tuple = ()
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RegressionThresholds:
    response_time_pct: float = 0.20
    throughput_pct: float = 0.20
    error_rate_points: float = 1.0


@dataclass(frozen=True)
class MetricViolation:
    metric: str
    baseline: float
    current: float
    delta: float  # relative for response_time/throughput, absolute points for error_rate
    threshold: float


@dataclass(frozen=True)
class RegressionVerdict:
    regression: bool
    has_baseline: bool
    reason: str = ""
    violations: tuple = ()
    improvements: tuple = ()
    differences: tuple = ()

    @property
    def violated_metrics(self):
        return [v.metric for v in self.violations]

    def to_dict(self):
        return {
            "regression": self.regression,
            "has_baseline": self.has_baseline,
            "reason": self.reason,
            "violations": [asdict(v) for v in self.violations],
            "improvements": list(self.improvements),
            "differences": dict(self.differences),
        }


@dataclass(frozen=True)
class TestResult:
    """One completed run. Immutable; the verdict is attached when recorded."""
    __test__ = False

    id: str
    test_id: str
    timestamp: datetime
    response_time: ResponseTimeMetrics
    throughput: float
    error_rate: float
    duration: float = 0.0
    users: int = 0
    requests: int = 0
    errors: int = 0
    resource_usage: tuple = ()
    verdict: Optional[RegressionVerdict] = None

    @property
    def regression(self):
        return bool(self.verdict and self.verdict.regression)

    def to_dict(self):
        return {
            "id": self.id,
            "test_id": self.test_id,
            "timestamp": self.timestamp.isoformat(),
            "response_time": asdict(self.response_time),
            "throughput": self.throughput,
            "error_rate": self.error_rate,
            "duration": self.duration,
            "users": self.users,
            "requests": self.requests,
            "errors": self.errors,
            "resource_usage": dict(self.resource_usage),
            "verdict": self.verdict.to_dict() if self.verdict else None,
        }

    @classmethod
    def from_dict(cls, d):
        ts = d.get("timestamp")
        rt = d.get("response_time", {})
        if not isinstance(rt, dict):
            rt = {"avg": float(rt)}
        verdict = d.get("verdict")
        return cls(
            id=d.get("id", ""),
            test_id=d.get("test_id", ""),
            timestamp=datetime.fromisoformat(ts) if isinstance(ts, str) else ts,
            response_time=ResponseTimeMetrics(**rt),
            throughput=float(d.get("throughput", 0)),
            error_rate=float(d.get("error_rate", 0)),
            duration=float(d.get("duration", 0)),
            users=int(d.get("users", 0)),
            requests=int(d.get("requests", 0)),
            errors=int(d.get("errors", 0)),
            resource_usage=tuple(sorted((d.get("resource_usage") or {}).items())),
            verdict=_verdict_from_dict(verdict) if verdict else None,
        )


def _verdict_from_dict(d):
    return RegressionVerdict(
        regression=d["regression"],
        has_baseline=d["has_baseline"],
        reason=d.get("reason", ""),
        violations=tuple(MetricViolation(**v) for v in d.get("violations", [])),
        improvements=tuple(d.get("improvements", [])),
        differences=tuple(sorted((d.get("differences") or {}).items())),
    )


def baseline_from_dict(d):
    ts = d.get("timestamp")
    return TestBaseline(
        response_time=float(d.get("response_time", 0)),
        throughput=float(d.get("throughput", 0)),
        error_rate=float(d.get("error_rate", 0)),
        resource_usage=tuple(sorted((d.get("resource_usage") or {}).items())),
        timestamp=datetime.fromisoformat(ts) if isinstance(ts, str) else ts,
    )


def baseline_to_dict(b):
    return {
        "response_time": b.response_time,
        "throughput": b.throughput,
        "error_rate": b.error_rate,
        "resource_usage": dict(b.resource_usage),
        "timestamp": b.timestamp.isoformat() if b.timestamp else None,
    }


@dataclass
class PerformanceTest:
    __test__ = False

    id: str = ""
    name: str = ""
    type: TestType = TestType.LOAD
    baseline: Optional[TestBaseline] = None
    results: list = field(default_factory=list)
    status: TestStatus = TestStatus.PENDING
    users: int = 0
    duration: float = 0.0
    environment: str = "staging"
    tags: list = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def latest_result(self):
        return self.results[-1] if self.results else None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "baseline": baseline_to_dict(self.baseline) if self.baseline else None,
            "status": self.status.value,
            "users": self.users,
            "duration": self.duration,
            "environment": self.environment,
            "tags": list(self.tags),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, d, results=None):
        def parse(ts):
            return datetime.fromisoformat(ts) if isinstance(ts, str) else ts
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            type=TestType(d.get("type", "load")),
            baseline=baseline_from_dict(d["baseline"]) if d.get("baseline") else None,
            results=list(results or []),
            status=TestStatus(d.get("status", "pending")),
            users=int(d.get("users", 0)),
            duration=float(d.get("duration", 0)),
            environment=d.get("environment", "staging"),
            tags=list(d.get("tags", [])),
            start_time=parse(d.get("start_time")),
            end_time=parse(d.get("end_time")),
        )
