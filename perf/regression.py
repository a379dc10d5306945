"""Performance regression detection against recorded baselines."""
import logging
import threading
import uuid
from dataclasses import replace

from models.enums import TestStatus, TestType
from models.performance import (
    MetricViolation, PerformanceTest, RegressionThresholds, RegressionVerdict,
    TestBaseline, TestResult, baseline_from_dict,
)
from utils.errors import MonitorError, NotFoundError
from utils.events import PERFORMANCE_REGRESSION_DETECTED, PERFORMANCE_TEST_COMPLETED

logger = logging.getLogger("opsmonitor.perf.regression")

NO_BASELINE_REASON = "no baseline recorded; nothing to compare against"


class RegressionDetector:
    """Compares a result against a baseline metric by metric.

    Response time and throughput deltas are relative to the baseline;
    error rate is compared in absolute percentage points. A baseline value
    of zero has no meaningful ratio, so that metric is reported in
    ``differences`` but never flagged.
    """

    def __init__(self, thresholds=None):
        self.thresholds = thresholds or RegressionThresholds()

    def compare(self, baseline, result, thresholds=None):
        t = thresholds or self.thresholds
        if baseline is None:
            return RegressionVerdict(regression=False, has_baseline=False, reason=NO_BASELINE_REASON)

        violations = []
        improvements = []
        differences = {}

        current_rt = result.response_time.avg
        if baseline.response_time > 0:
            delta = (current_rt - baseline.response_time) / baseline.response_time
            differences["response_time"] = round(delta, 6)
            if delta > t.response_time_pct:
                violations.append(MetricViolation(
                    "response_time", baseline.response_time, current_rt, delta, t.response_time_pct))
            elif delta < 0:
                improvements.append("response_time")

        if baseline.throughput > 0:
            delta = (baseline.throughput - result.throughput) / baseline.throughput
            differences["throughput"] = round(-delta, 6)
            if delta > t.throughput_pct:
                violations.append(MetricViolation(
                    "throughput", baseline.throughput, result.throughput, delta, t.throughput_pct))
            elif delta < 0:
                improvements.append("throughput")

        delta = result.error_rate - baseline.error_rate
        differences["error_rate"] = round(delta, 6)
        if delta > t.error_rate_points:
            violations.append(MetricViolation(
                "error_rate", baseline.error_rate, result.error_rate, delta, t.error_rate_points))
        elif delta < 0:
            improvements.append("error_rate")

        if violations:
            reason = "; ".join(_describe(v) for v in violations)
        else:
            reason = "all metrics within thresholds"

        return RegressionVerdict(
            regression=bool(violations),
            has_baseline=True,
            reason=reason,
            violations=tuple(violations),
            improvements=tuple(improvements),
            differences=tuple(sorted(differences.items())),
        )


def _describe(v):
    if v.metric == "error_rate":
        return f"error_rate +{v.delta:.2f} points (limit {v.threshold:.2f})"
    direction = "+" if v.metric == "response_time" else "-"
    return f"{v.metric} {direction}{v.delta * 100:.1f}% (limit {v.threshold * 100:.0f}%)"


class PerformanceTestTracker:
    """Tests, their ordered results, and baselines.

    Recording a result attaches the regression verdict to the stored
    (immutable) result. Baselines change only through ``set_baseline`` and
    ``promote_baseline``.
    """

    def __init__(self, clock, detector=None, bus=None, store=None):
        self.clock = clock
        self.detector = detector or RegressionDetector()
        self.bus = bus
        self.store = store
        self._tests = {}
        self._lock = threading.RLock()

    def _emit(self, name, payload):
        if self.bus is not None:
            self.bus.emit(name, payload, timestamp=self.clock.now())

    def _persist(self, test, result=None):
        if self.store is None:
            return
        try:
            self.store.save_test(test)
            if result is not None:
                self.store.save_result(result)
        except Exception as e:
            logger.warning(f"Failed to persist performance test {test.id}: {e}")

    def create_test(self, name, type=TestType.LOAD, users=0, duration=0.0,
                    environment="staging", tags=None, baseline=None, test_id=None):
        if isinstance(baseline, dict):
            baseline = baseline_from_dict(baseline)
        test = PerformanceTest(
            id=test_id or f"test_{uuid.uuid4().hex[:8]}",
            name=name,
            type=TestType(type),
            baseline=baseline,
            users=users,
            duration=duration,
            environment=environment,
            tags=list(tags or []),
        )
        with self._lock:
            if test.id in self._tests:
                raise MonitorError(f"Performance test {test.id} already exists")
            self._tests[test.id] = test
        self._persist(test)
        logger.info(f"Created performance test {test.id} ({test.name})")
        return test

    def get_test(self, test_id):
        with self._lock:
            return self._tests.get(test_id)

    def require_test(self, test_id):
        test = self.get_test(test_id)
        if test is None:
            raise NotFoundError(f"Performance test {test_id} not found")
        return test

    def list_tests(self):
        with self._lock:
            return list(self._tests.values())

    def start_test(self, test_id):
        with self._lock:
            test = self.require_test(test_id)
            test.status = TestStatus.RUNNING
            test.start_time = self.clock.now()
            test.end_time = None
        self._persist(test)
        logger.info(f"Performance test {test_id} started")
        return test

    def fail_test(self, test_id, reason=""):
        with self._lock:
            test = self.require_test(test_id)
            test.status = TestStatus.FAILED
            test.end_time = self.clock.now()
        self._persist(test)
        logger.error(f"Performance test {test_id} failed: {reason}")
        return test

    def record_result(self, test_id, result):
        """Attach a completed run; returns the stored result with its verdict."""
        if isinstance(result, dict):
            result = TestResult.from_dict(dict(result, test_id=test_id))
        with self._lock:
            test = self.require_test(test_id)
            verdict = self.detector.compare(test.baseline, result)
            result = replace(
                result,
                id=result.id or f"result_{uuid.uuid4().hex[:8]}",
                test_id=test_id,
                timestamp=result.timestamp or self.clock.now(),
                verdict=verdict,
            )
            test.results.append(result)
            test.status = TestStatus.COMPLETED
            test.end_time = self.clock.now()
        self._persist(test, result)

        logger.info(f"Performance test {test_id} completed: {verdict.reason}")
        self._emit(PERFORMANCE_TEST_COMPLETED, {
            "test_id": test_id,
            "result_id": result.id,
            "regression": verdict.regression,
        })
        if verdict.regression:
            logger.warning(f"Regression detected in {test_id}: {verdict.violated_metrics}")
            self._emit(PERFORMANCE_REGRESSION_DETECTED, {
                "test_id": test_id,
                "result_id": result.id,
                "violations": verdict.violated_metrics,
                "reason": verdict.reason,
            })
        return result

    def set_baseline(self, test_id, baseline):
        if isinstance(baseline, dict):
            baseline = baseline_from_dict(baseline)
        with self._lock:
            test = self.require_test(test_id)
            test.baseline = baseline
        self._persist(test)
        logger.info(f"Baseline set for {test_id}")
        return baseline

    def promote_baseline(self, test_id, result_id=None):
        """Make a recorded result the new baseline (latest result by default)."""
        with self._lock:
            test = self.require_test(test_id)
            if result_id is None:
                result = test.latest_result
            else:
                result = next((r for r in test.results if r.id == result_id), None)
            if result is None:
                raise NotFoundError(f"No result {result_id or '(latest)'} for test {test_id}")
            if result.regression:
                logger.warning(f"Promoting regressed result {result.id} to baseline of {test_id}")
            baseline = TestBaseline(
                response_time=result.response_time.avg,
                throughput=result.throughput,
                error_rate=result.error_rate,
                resource_usage=result.resource_usage,
                timestamp=result.timestamp,
            )
        return self.set_baseline(test_id, baseline)
