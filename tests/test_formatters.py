"""Tests for formatters and the event bus."""
import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.formatters import format_duration, format_pct, format_timestamp, parse_duration, time_ago
from utils.events import EventBus


@pytest.mark.parametrize("raw,seconds", [
    (30, 30.0),
    ("30s", 30.0),
    ("15min", 900.0),
    ("1h", 3600.0),
    ("2 days", 172800.0),
    ("250ms", 0.25),
    ("1.5m", 90.0),
])
def test_parse_duration(raw, seconds):
    assert parse_duration(raw) == seconds


def test_parse_duration_rejects_garbage():
    with pytest.raises(ValueError):
        parse_duration("soon")
    with pytest.raises(ValueError):
        parse_duration("15 fortnights")


def test_format_duration():
    assert format_duration(45) == "45s"
    assert format_duration(90) == "1m30s"
    assert format_duration(900) == "15m"
    assert format_duration(7200) == "2h"
    assert format_duration(90000) == "1d1h"
    assert format_duration(None) == "N/A"


def test_format_pct():
    assert format_pct(5.4) == "+5.40%"
    assert format_pct(-12.5) == "-12.50%"
    assert format_pct(None) == "N/A"
    assert "red" in format_pct(5.0, with_color=True)
    assert "green" in format_pct(-5.0, with_color=True)


def test_time_ago_and_timestamp():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert time_ago(now - timedelta(hours=3), now=now) == "3h ago"
    assert time_ago(None) == "N/A"
    assert format_timestamp(now) == "2024-01-01 12:00 UTC"


def test_event_bus_delivers_and_records():
    bus = EventBus(keep_history=2)
    seen = []
    bus.subscribe("alert.triggered", lambda name, payload: seen.append(payload["rule_id"]))
    bus.subscribe("*", lambda name, payload: seen.append(name))

    bus.emit("alert.triggered", {"rule_id": "latency"})
    bus.emit("alert.resolved", {"rule_id": "latency"})
    bus.emit("alert.resolved", {"rule_id": "cpu"})

    assert seen == ["latency", "alert.triggered", "alert.resolved", "alert.resolved"]
    assert [name for name, _ in bus.events()] == ["alert.resolved", "alert.resolved"]


def test_event_bus_isolates_failing_subscriber():
    bus = EventBus()
    seen = []
    bus.subscribe("x", lambda name, payload: 1 / 0)
    bus.subscribe("x", lambda name, payload: seen.append(payload))
    payload = bus.emit("x", {"a": 1}, timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert seen == [payload]
    assert payload["timestamp"].startswith("2024-01-01")


def test_unsubscribe():
    bus = EventBus()
    seen = []
    cb = lambda name, payload: seen.append(name)
    bus.subscribe("x", cb)
    bus.unsubscribe("x", cb)
    bus.emit("x")
    assert seen == []
