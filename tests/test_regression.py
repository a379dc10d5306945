"""Tests for regression detection and the performance test tracker."""
from datetime import datetime, timezone

import pytest

from models.enums import TestStatus
from models.performance import (
    RegressionThresholds, ResponseTimeMetrics, TestBaseline, TestResult,
)
from perf.regression import NO_BASELINE_REASON, PerformanceTestTracker, RegressionDetector
from utils.errors import NotFoundError
from utils.events import PERFORMANCE_REGRESSION_DETECTED, PERFORMANCE_TEST_COMPLETED

BASELINE = TestBaseline(response_time=200, throughput=1000, error_rate=1.0)


def _result(avg=200.0, throughput=1000.0, error_rate=1.0, result_id=""):
    return TestResult(
        id=result_id, test_id="", timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        response_time=ResponseTimeMetrics(avg=avg, p95=avg * 1.5),
        throughput=throughput, error_rate=error_rate,
    )


# ── Detector ────────────────────────────────────────────

def test_response_time_regression():
    verdict = RegressionDetector().compare(BASELINE, _result(avg=260))
    assert verdict.regression is True
    assert verdict.has_baseline is True
    assert verdict.violated_metrics == ["response_time"]
    assert verdict.violations[0].delta == pytest.approx(0.30)


def test_response_time_within_threshold():
    verdict = RegressionDetector().compare(BASELINE, _result(avg=220))
    assert verdict.regression is False
    assert verdict.violations == ()
    assert dict(verdict.differences)["response_time"] == pytest.approx(0.10)


def test_exactly_at_threshold_is_not_regression():
    assert RegressionDetector().compare(BASELINE, _result(avg=240)).regression is False


def test_throughput_regression():
    verdict = RegressionDetector().compare(BASELINE, _result(throughput=750))
    assert verdict.violated_metrics == ["throughput"]
    assert verdict.violations[0].delta == pytest.approx(0.25)


def test_error_rate_is_absolute_points():
    detector = RegressionDetector()
    assert detector.compare(BASELINE, _result(error_rate=2.0)).regression is False
    verdict = detector.compare(BASELINE, _result(error_rate=2.5))
    assert verdict.violated_metrics == ["error_rate"]
    assert verdict.violations[0].delta == pytest.approx(1.5)


def test_all_metrics_reported():
    verdict = RegressionDetector().compare(BASELINE, _result(avg=300, throughput=500, error_rate=5))
    assert verdict.violated_metrics == ["response_time", "throughput", "error_rate"]
    assert "response_time" in verdict.reason and "error_rate" in verdict.reason


def test_improvements_listed():
    verdict = RegressionDetector().compare(BASELINE, _result(avg=150, throughput=1200, error_rate=0.5))
    assert verdict.regression is False
    assert verdict.improvements == ("response_time", "throughput", "error_rate")
    assert dict(verdict.differences)["throughput"] == pytest.approx(0.2)


def test_no_baseline_is_explicit():
    verdict = RegressionDetector().compare(None, _result(avg=10_000))
    assert verdict.regression is False
    assert verdict.has_baseline is False
    assert verdict.reason == NO_BASELINE_REASON


def test_zero_baseline_values_skip_ratio():
    verdict = RegressionDetector().compare(TestBaseline(response_time=0, throughput=0, error_rate=0),
                                           _result(avg=500, throughput=10, error_rate=0.5))
    assert verdict.regression is False
    assert set(dict(verdict.differences)) == {"error_rate"}


def test_custom_thresholds():
    strict = RegressionThresholds(response_time_pct=0.05, throughput_pct=0.05, error_rate_points=0.1)
    assert RegressionDetector(strict).compare(BASELINE, _result(avg=220)).regression is True
    assert RegressionDetector().compare(BASELINE, _result(avg=220), thresholds=strict).regression is True


# ── Tracker ─────────────────────────────────────────────

def _tracker(clock, bus, store=None):
    return PerformanceTestTracker(clock, bus=bus, store=store)


def test_record_result_attaches_verdict(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("checkout load", baseline={"response_time": 200, "throughput": 1000, "error_rate": 1.0})
    tracker.start_test(test.id)
    assert test.status == TestStatus.RUNNING

    clock.advance(600)
    stored = tracker.record_result(test.id, _result(avg=260))
    assert stored.regression is True
    assert stored.test_id == test.id
    assert stored.id.startswith("result_")
    assert test.status == TestStatus.COMPLETED
    assert test.end_time == clock.now()
    assert test.latest_result is stored
    assert test.baseline.response_time == 200
    assert len(bus.events(PERFORMANCE_TEST_COMPLETED)) == 1
    assert bus.events(PERFORMANCE_REGRESSION_DETECTED)[0][1]["violations"] == ["response_time"]


def test_result_is_immutable(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t")
    stored = tracker.record_result(test.id, _result())
    with pytest.raises(Exception):
        stored.throughput = 1


def test_no_regression_event_without_baseline(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t")
    stored = tracker.record_result(test.id, _result(avg=999))
    assert stored.verdict.has_baseline is False
    assert bus.events(PERFORMANCE_REGRESSION_DETECTED) == []


def test_record_result_from_dict(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t", baseline=BASELINE)
    stored = tracker.record_result(test.id, {"response_time": {"avg": 205}, "throughput": 990, "error_rate": 1.1})
    assert stored.regression is False
    assert stored.timestamp == clock.now()


def test_promote_baseline(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t", baseline=BASELINE)
    tracker.record_result(test.id, _result(avg=180, throughput=1100, error_rate=0.8))
    baseline = tracker.promote_baseline(test.id)
    assert baseline.response_time == 180
    assert test.baseline.throughput == 1100

    # earlier results keep their verdicts
    assert test.results[0].verdict.improvements


def test_promote_without_results(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t")
    with pytest.raises(NotFoundError):
        tracker.promote_baseline(test.id)


def test_fail_test(clock, bus):
    tracker = _tracker(clock, bus)
    test = tracker.create_test("t")
    tracker.start_test(test.id)
    tracker.fail_test(test.id, "load generator crashed")
    assert test.status == TestStatus.FAILED


def test_unknown_test(clock, bus):
    with pytest.raises(NotFoundError):
        _tracker(clock, bus).record_result("missing", _result())


def test_tracker_persists(clock, bus, temp_db):
    tracker = _tracker(clock, bus, store=temp_db)
    test = tracker.create_test("checkout", baseline=BASELINE, test_id="checkout")
    tracker.record_result("checkout", _result(avg=260))
    tracker.record_result("checkout", _result(avg=210))

    loaded = temp_db.get_test("checkout")
    assert loaded.baseline.response_time == 200
    assert [r.regression for r in loaded.results] == [True, False]
    assert loaded.results[0].verdict.violated_metrics == ["response_time"]
    assert [t.id for t in temp_db.list_tests()] == ["checkout"]
