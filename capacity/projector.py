"""Capacity projection from current usage and weighted growth factors."""
import logging
import threading
from dataclasses import replace
from pathlib import Path

import yaml

from models.capacity import CapacityCost, CapacityPlan, CapacityRecommendation, CapacityRisk
from models.enums import Aggregation
from utils.errors import ConfigurationError, NotFoundError
from utils.events import CAPACITY_PLAN_UPDATED, CAPACITY_THRESHOLD_EXCEEDED

logger = logging.getLogger("opsmonitor.capacity.projector")

CRITICAL_UTILIZATION = 95.0
SCALE_DOWN_BELOW = 30.0
TARGET_UTILIZATION = 70.0


def project_usage(current_usage, factors):
    """current * (1 + sum(impact * confidence)), never below zero."""
    net = sum(f.weighted_impact for f in factors)
    return max(0.0, current_usage * (1 + net))


def recommend(plan, threshold, critical=CRITICAL_UTILIZATION):
    projected = plan.projected_usage
    if projected > critical:
        return [CapacityRecommendation(
            type="scale_up",
            description=f"Scale {plan.resource} up by 50% immediately (projected {projected:.1f}%)",
            priority="critical",
            scale_percent=50.0,
            target_utilization=TARGET_UTILIZATION,
        )]
    if projected > threshold:
        return [CapacityRecommendation(
            type="scale_up",
            description=f"Scale {plan.resource} up by 25% within {plan.time_horizon}",
            priority="high",
            scale_percent=25.0,
            target_utilization=TARGET_UTILIZATION,
        )]
    if projected < SCALE_DOWN_BELOW:
        return [CapacityRecommendation(
            type="scale_down",
            description=f"{plan.resource} projected at {projected:.1f}%, consider scaling down",
            priority="low",
            scale_percent=-25.0,
            target_utilization=TARGET_UTILIZATION,
        )]
    return []


def assess_risks(plan, threshold):
    projected = plan.projected_usage
    risks = []
    if projected > threshold:
        over = min(1.0, (projected - threshold) / max(1.0, 100.0 - threshold))
        risks.append(CapacityRisk(
            type="performance",
            probability=round(max(0.1, over) * plan.confidence, 3),
            impact=0.7,
            description=f"{plan.resource} utilization above {threshold:.0f}% degrades latency",
            mitigation="Scale up or shed load before the projection horizon",
        ))
    if projected >= 100.0:
        risks.append(CapacityRisk(
            type="availability",
            probability=round(plan.confidence, 3),
            impact=0.9,
            description=f"{plan.resource} projected to exhaust capacity",
            mitigation="Provision additional capacity now",
        ))
    return risks


def project_cost(cost, previous_usage, projected_usage, savings=0.2):
    if cost is None:
        return None
    if previous_usage <= 0:
        return cost
    projected = round(cost.current * projected_usage / previous_usage, 2)
    return replace(cost, projected=projected, optimized=round(projected * (1 - savings), 2))


def load_plans(path):
    """Read plans from YAML; invalid entries are logged and skipped."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Capacity plans file not found: {path}")
        return []
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    plans = []
    for raw in data.get("plans", []):
        try:
            plans.append(CapacityPlan.from_dict(raw))
        except (KeyError, TypeError, ValueError, ConfigurationError) as e:
            logger.warning(f"Skipping invalid capacity plan {raw.get('id', '?') if isinstance(raw, dict) else raw}: {e}")
    return plans


class CapacityProjector:
    """Owns the capacity plans and recomputes them on demand.

    ``capacity.threshold_exceeded`` fires once per upward crossing of the
    utilization threshold. The plan has to come back to or below the
    threshold before another crossing can fire.
    """

    def __init__(self, source, clock, bus=None, store=None, threshold=80.0,
                 critical_threshold=CRITICAL_UTILIZATION, window=3600, plans=None):
        self.source = source
        self.clock = clock
        self.bus = bus
        self.store = store
        self.threshold = float(threshold)
        self.critical_threshold = float(critical_threshold)
        self.window = window
        self._plans = {}
        self._lock = threading.Lock()
        for plan in plans or []:
            self.add_plan(plan)

    def add_plan(self, plan):
        if isinstance(plan, dict):
            plan = CapacityPlan.from_dict(plan)
        if not plan.id:
            raise ConfigurationError("Capacity plan requires an id")
        with self._lock:
            self._plans[plan.id] = plan
        return plan

    def remove_plan(self, plan_id):
        with self._lock:
            return self._plans.pop(plan_id, None) is not None

    def get_plan(self, plan_id):
        with self._lock:
            return self._plans.get(plan_id)

    def require_plan(self, plan_id):
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Capacity plan {plan_id} not found")
        return plan

    def plans(self):
        with self._lock:
            return list(self._plans.values())

    def _current_usage(self, plan):
        if plan.metric is None:
            return plan.current_usage
        try:
            value = self.source.query(plan.metric, plan.metric.aggregation or Aggregation.AVG, self.window)
        except Exception as e:
            logger.warning(f"Usage refresh failed for {plan.id}, keeping {plan.current_usage}: {e}")
            return plan.current_usage
        if value is None:
            logger.warning(f"No usage data for {plan.id} ({plan.metric}), keeping {plan.current_usage}")
            return plan.current_usage
        return float(value)

    def recompute(self, plan_or_id):
        """Refresh usage, project it and derive recommendations. Returns the new plan."""
        plan = self.require_plan(plan_or_id) if isinstance(plan_or_id, str) else plan_or_id
        current = self._current_usage(plan)
        projected = project_usage(current, plan.factors)
        crossed = projected > self.threshold

        updated = replace(
            plan,
            current_usage=current,
            projected_usage=projected,
            threshold_exceeded=crossed,
            last_updated=self.clock.now(),
        )
        updated.recommendations = recommend(updated, self.threshold, self.critical_threshold)
        updated.risks = assess_risks(updated, self.threshold)
        updated.cost = project_cost(plan.cost, current, projected)

        with self._lock:
            previous = self._plans.get(plan.id, plan)
            self._plans[plan.id] = updated
        fire = crossed and not previous.threshold_exceeded

        if self.store is not None:
            try:
                self.store.save_plan(updated)
            except Exception as e:
                logger.warning(f"Failed to persist capacity plan {plan.id}: {e}")

        logger.info(f"Capacity {plan.id}: current {current:.2f} -> projected {projected:.2f}")
        self._emit(CAPACITY_PLAN_UPDATED, {
            "plan_id": plan.id,
            "current_usage": current,
            "projected_usage": projected,
        })
        if fire:
            logger.warning(f"Capacity {plan.id} projected at {projected:.2f}, above {self.threshold:.0f}")
            self._emit(CAPACITY_THRESHOLD_EXCEEDED, {
                "plan_id": plan.id,
                "resource": plan.resource,
                "projected_usage": projected,
                "threshold": self.threshold,
            })
        elif previous.threshold_exceeded and not crossed:
            logger.info(f"Capacity {plan.id} back under threshold ({projected:.2f})")
        return updated

    def recompute_all(self):
        results = []
        for plan in self.plans():
            try:
                results.append(self.recompute(plan))
            except Exception as e:
                logger.error(f"Capacity plan update failed for {plan.id}: {e}")
        return results

    def _emit(self, name, payload):
        if self.bus is not None:
            self.bus.emit(name, payload, timestamp=self.clock.now())
