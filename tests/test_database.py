"""Tests for the SQLite store."""
from datetime import datetime, timedelta, timezone

from alerts.dispatcher import ChannelOutcome, DispatchReport
from models.alerts import Alert
from models.capacity import CapacityFactor, CapacityPlan
from models.enums import AlertStatus, DispatchOutcome, EventKind, Severity
from models.performance import PerformanceTest, ResponseTimeMetrics, TestBaseline, TestResult

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _alert(alert_id, severity=Severity.HIGH, status=AlertStatus.ACTIVE, at=NOW):
    return Alert(
        id=alert_id, rule_id="latency", rule_name="Latency", severity=severity, status=status,
        first_triggered_at=at, last_seen_at=at, metric_value=812.5, threshold=500,
        message="avg(response_time) = 812.5 gt 500",
    )


def test_tables_created(temp_db):
    tables = {r["name"] for r in temp_db.conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    assert {"alert_history", "notification_log", "capacity_plans",
            "performance_tests", "test_results"} <= tables


def test_alert_save_and_update(temp_db):
    alert = _alert("a1")
    temp_db.save_alert(alert)
    alert.status = AlertStatus.ACKNOWLEDGED
    alert.acknowledged_by = "alice"
    alert.acknowledged_at = NOW + timedelta(minutes=3)
    temp_db.save_alert(alert)

    loaded = temp_db.get_alert("a1")
    assert loaded.status == AlertStatus.ACKNOWLEDGED
    assert loaded.acknowledged_by == "alice"
    assert loaded.first_triggered_at == NOW
    assert temp_db.get_alert("missing") is None


def test_open_alerts_and_stats(temp_db):
    temp_db.save_alert(_alert("a1"))
    temp_db.save_alert(_alert("a2", severity=Severity.CRITICAL, status=AlertStatus.RESOLVED))
    temp_db.save_alert(_alert("old", at=NOW - timedelta(days=40)))

    assert sorted(a.id for a in temp_db.get_open_alerts()) == ["a1", "old"]
    assert temp_db.get_alert_stats(days=30, now=NOW) == {"high": 1, "critical": 1}
    recent = temp_db.get_recent_alerts(since=NOW - timedelta(days=7))
    assert {r["id"] for r in recent} == {"a1", "a2"}


def test_notification_log(temp_db):
    report = DispatchReport(alert_id="a1", rule_id="latency", event_kind=EventKind.TRIGGERED, outcomes=[
        ChannelOutcome("ops-slack", "slack", DispatchOutcome.SENT, attempts=1),
        ChannelOutcome("ops-mail", "email", DispatchOutcome.FAILED, attempts=3, error="smtp down"),
    ])
    temp_db.log_dispatch(report, now=NOW)
    rows = temp_db.get_notification_log("a1")
    assert {r["channel_id"]: r["outcome"] for r in rows} == {"ops-slack": "sent", "ops-mail": "failed"}
    assert all(r["event_kind"] == "triggered" for r in rows)
    assert temp_db.get_notification_log("other") == []


def test_capacity_plan_roundtrip(temp_db):
    plan = CapacityPlan(id="cpu", name="CPU", resource="cpu", current_usage=65, projected_usage=79.3,
                        factors=[CapacityFactor(name="growth", impact=0.25, confidence=0.8)],
                        last_updated=NOW)
    temp_db.save_plan(plan)
    loaded = temp_db.get_plan("cpu")
    assert loaded.projected_usage == 79.3
    assert loaded.factors[0].impact == 0.25
    assert [p.id for p in temp_db.list_plans()] == ["cpu"]


def test_tests_and_results_in_order(temp_db):
    test = PerformanceTest(id="t1", name="checkout", baseline=TestBaseline(response_time=200, throughput=100))
    temp_db.save_test(test)
    for i, avg in enumerate((210, 190, 260)):
        temp_db.save_result(TestResult(
            id=f"r{i}", test_id="t1", timestamp=NOW,
            response_time=ResponseTimeMetrics(avg=avg), throughput=100, error_rate=0.1,
        ))

    loaded = temp_db.get_test("t1")
    assert loaded.baseline.response_time == 200
    assert [r.id for r in loaded.results] == ["r0", "r1", "r2"]
    assert [t.id for t in temp_db.list_tests()] == ["t1"]
    assert temp_db.get_test("nope") is None
