"""Dataclasses for capacity plans and their derived outputs."""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from models.alerts import MetricQuery
from models.enums import Trend


@dataclass
class CapacityFactor:
    name: str = ""
    impact: float = 0.0  # signed fractional change, e.g. 0.1 = +10%
    trend: Trend = Trend.STABLE
    confidence: float = 1.0
    description: str = ""

    @property
    def weighted_impact(self):
        return self.impact * self.confidence


@dataclass
class CapacityRecommendation:
    type: str = "optimize"  # scale_up | scale_down | optimize | migrate | archive
    description: str = ""
    priority: str = "medium"
    scale_percent: float = 0.0
    target_utilization: float = 70.0


@dataclass
class CapacityRisk:
    type: str = "performance"  # performance | availability | cost | security
    probability: float = 0.0
    impact: float = 0.0
    description: str = ""
    mitigation: str = ""


@dataclass
class CapacityCost:
    current: float = 0.0
    projected: float = 0.0
    optimized: float = 0.0
    currency: str = "USD"
    period: str = "monthly"


@dataclass
class CapacityPlan:
    id: str = ""
    name: str = ""
    resource: str = ""
    metric: Optional[MetricQuery] = None
    current_usage: float = 0.0
    projected_usage: float = 0.0
    time_horizon: str = "3 months"
    confidence: float = 0.8
    factors: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    risks: list = field(default_factory=list)
    cost: Optional[CapacityCost] = None
    threshold_exceeded: bool = False
    last_updated: Optional[datetime] = None

    @property
    def net_impact(self):
        return sum(f.weighted_impact for f in self.factors)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "resource": self.resource,
            "metric": str(self.metric) if self.metric else None,
            "current_usage": self.current_usage,
            "projected_usage": self.projected_usage,
            "time_horizon": self.time_horizon,
            "confidence": self.confidence,
            "factors": [dict(asdict(f), trend=f.trend.value) for f in self.factors],
            "recommendations": [asdict(r) for r in self.recommendations],
            "risks": [asdict(r) for r in self.risks],
            "cost": asdict(self.cost) if self.cost else None,
            "threshold_exceeded": self.threshold_exceeded,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, d):
        last = d.get("last_updated")
        cost = d.get("cost")
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            resource=d.get("resource", ""),
            metric=MetricQuery.parse(d["metric"]) if d.get("metric") else None,
            current_usage=float(d.get("current_usage", 0) or 0),
            projected_usage=float(d.get("projected_usage", 0) or 0),
            time_horizon=d.get("time_horizon", "3 months"),
            confidence=float(d.get("confidence", 0.8)),
            factors=[
                CapacityFactor(
                    name=f.get("name", ""),
                    impact=float(f.get("impact", 0)),
                    trend=Trend(f.get("trend", "stable")),
                    confidence=float(f.get("confidence", 1.0)),
                    description=f.get("description", ""),
                )
                for f in d.get("factors", [])
            ],
            recommendations=[CapacityRecommendation(**r) for r in d.get("recommendations", [])],
            risks=[CapacityRisk(**r) for r in d.get("risks", [])],
            cost=CapacityCost(**cost) if cost else None,
            threshold_exceeded=bool(d.get("threshold_exceeded", False)),
            last_updated=datetime.fromisoformat(last) if isinstance(last, str) else last,
        )
