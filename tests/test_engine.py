"""Tests for the monitoring engine loops."""
import threading
import time

import pytest

from alerts.rules_manager import RulesManager
from capacity.projector import CapacityProjector
from models.capacity import CapacityFactor, CapacityPlan
from models.alerts import MetricQuery
from models.enums import AlertStatus, ChannelType
from monitor.clock import MonitoringClock
from monitor.engine import MonitoringEngine, build_engine
from utils.events import ALERT_TRIGGERED, CAPACITY_PLAN_UPDATED

from conftest import RecordingChannel, make_rule

CONFIG = {
    "monitoring": {"concurrent": False, "collection_interval": 30},
    "alerts": {"meta_alert_after_failures": 3, "retention_seconds": 3600},
    "notifications": {"send_timeout_seconds": 5, "parallel": False, "retry": {"max_retries": 0}},
    "capacity": {"refresh_interval": 3600},
}


def _engine(clock, source, channels, bus, *rules, config=CONFIG, projector=None):
    rm = RulesManager(None, autoload=False)
    for rule in rules:
        rm.add_rule(rule)
    return build_engine(config, rm, source, channels, clock, bus=bus, projector=projector)


def test_rules_evaluated_on_their_interval(clock, source, channels, console_channel, bus):
    engine = _engine(clock, source, channels, bus,
                     make_rule("fast", interval=10), make_rule("slow", interval=60, query="avg(cpu_usage)"))
    engine.start()
    clock.advance(60)
    queried = [q for q, _, _ in source.queries]
    assert queried.count("avg(response_time)") == 6
    assert queried.count("avg(cpu_usage)") == 1
    engine.stop()


def test_engine_triggers_alert_from_loop(clock, source, channels, console_channel, bus):
    engine = _engine(clock, source, channels, bus, make_rule(interval=30))
    source.set("response_time", 800)
    engine.start()
    clock.advance(30)
    assert len(bus.events(ALERT_TRIGGERED)) == 1
    alert = engine.lifecycle.active_alert("latency")
    assert alert.status == AlertStatus.ACTIVE
    clock.advance(120)
    assert len(bus.events(ALERT_TRIGGERED)) == 1
    engine.stop()


def test_failing_rule_does_not_stop_others(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus,
                     make_rule("broken", query="avg(queue_depth)"), make_rule("latency"))
    source.fail("queue_depth")
    source.set("response_time", 800)
    results = {r.rule_id: r.action for r in engine.check_all()}
    assert results == {"broken": "error", "latency": "triggered"}


def test_exception_in_tick_is_isolated(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus, make_rule())

    def boom(rule):
        raise RuntimeError("unexpected")

    engine.lifecycle.evaluate_rule = boom
    result = engine.evaluate("latency")
    assert result.action == "error"
    assert "unexpected" in result.error


def test_disabled_rules_not_scheduled(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus, make_rule("on"), make_rule("off", enabled=False))
    assert engine.sync_rules() == ["on"]


def test_sync_rules_picks_up_changes(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus, make_rule("a"))
    engine.start()
    engine.rules.add_rule(make_rule("b", query="avg(cpu_usage)"))
    engine.rules.set_enabled("a", False)
    clock.advance(30)                      # collection tick resyncs
    assert sorted(engine._rule_jobs) == ["b"]
    engine.stop()
    assert clock.pending_count() == 0


def test_stop_cancels_escalations(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus,
                     make_rule(escalation=[{"delay": 600, "actions": ["page_on_call"]}]))
    source.set("response_time", 800)
    engine.start()
    clock.advance(30)
    engine.stop()
    clock.advance(10_000)
    assert bus.events("escalation.page_on_call") == []


def test_capacity_loop(clock, source, channels, bus):
    plan = CapacityPlan(id="cpu", resource="cpu", current_usage=50, factors=[CapacityFactor(impact=0.1)])
    projector = CapacityProjector(source, clock, bus=bus, plans=[plan])
    engine = _engine(clock, source, channels, bus, projector=projector)
    engine.start()
    clock.advance(7200)
    assert len(bus.events(CAPACITY_PLAN_UPDATED)) == 2
    engine.stop()


def test_collectors_run_and_prune(clock, source, channels, bus):
    engine = _engine(clock, source, channels, bus, make_rule())
    calls = []
    engine.add_collector(lambda: calls.append(clock.now()))
    engine.add_collector(lambda: 1 / 0)
    source.set("response_time", 800)
    alert = engine.check_all()[0].alert
    engine.lifecycle.resolve(alert.id)
    source.set("response_time", 100)

    engine.start()
    clock.advance(3630)
    assert len(calls) == 121
    assert engine.lifecycle.all_alerts() == []
    engine.stop()


def test_concurrent_mode_serializes_per_rule(clock, source, bus):
    channel = RecordingChannel()
    config = dict(CONFIG, monitoring={"concurrent": True, "collection_interval": 30})
    engine = _engine(clock, source, {ChannelType.CONSOLE: channel}, bus, make_rule(), config=config)
    gate = threading.Event()
    active = []
    overlap = []

    def slow_value():
        active.append(1)
        if len(active) > 1:
            overlap.append(True)
        gate.wait(2)
        active.pop()
        return 800

    source.set("response_time", slow_value)
    first = engine.submit("latency")
    skipped = engine.submit("latency")
    gate.set()
    result = first.result(timeout=5)
    assert result.action == "triggered"
    assert skipped is None
    assert overlap == []
    engine.stop()


# ── Wall-clock independence ─────────────────────────────

WALL_CONFIG = dict(
    CONFIG,
    monitoring={"concurrent": True, "collection_interval": 1},
    capacity={"refresh_interval": 1},
)


def _blocking(gate, seconds=3):
    def value():
        gate.wait(seconds)
        return 50
    return value


def _ticks(source, query):
    return sum(1 for q, _, _ in list(source.queries) if q == query)


def _run_for(engine, seconds, gate):
    engine.start()
    try:
        time.sleep(seconds)
    finally:
        gate.set()
        engine.stop()


def test_slow_rule_does_not_delay_other_rules(source, bus):
    gate = threading.Event()
    source.set("slow_metric", _blocking(gate))
    engine = _engine(MonitoringClock(tick_seconds=0.05), source, {ChannelType.CONSOLE: RecordingChannel()}, bus,
                     make_rule("slow", query="avg(slow_metric)", interval=1),
                     make_rule("fast", query="avg(cpu_usage)", interval=1),
                     config=WALL_CONFIG)
    _run_for(engine, 3.5, gate)
    assert _ticks(source, "avg(slow_metric)") == 1
    assert _ticks(source, "avg(cpu_usage)") >= 2


def test_slow_capacity_refresh_does_not_delay_rules(source, bus):
    gate = threading.Event()
    source.set("capacity_metric", _blocking(gate))
    plan = CapacityPlan(id="slow", resource="cpu", metric=MetricQuery.parse("avg(capacity_metric)"), current_usage=40)
    clock = MonitoringClock(tick_seconds=0.05)
    projector = CapacityProjector(source, clock, bus=bus, plans=[plan])
    engine = _engine(clock, source, {ChannelType.CONSOLE: RecordingChannel()}, bus,
                     make_rule("fast", query="avg(cpu_usage)", interval=1),
                     config=WALL_CONFIG, projector=projector)
    _run_for(engine, 3.5, gate)
    assert _ticks(source, "avg(capacity_metric)") == 1
    assert _ticks(source, "avg(cpu_usage)") >= 2
