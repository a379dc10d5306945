"""Shared test fixtures."""
import os
import sys
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.database import Database
from models.enums import ChannelType
from monitor.clock import ManualClock
from monitor.sources import StaticMetricSource
from utils.events import EventBus


class RecordingChannel:
    """Transport that records every send; can be told to fail."""

    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.sent = []

    def send(self, recipient, message):
        self.sent.append((recipient, message))
        if self.error:
            raise self.error
        return self.ok

    def kinds(self):
        return [m.event_kind for _, m in self.sent]


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def source():
    return StaticMetricSource()


@pytest.fixture
def bus():
    return EventBus(keep_history=500)


@pytest.fixture
def console_channel():
    return RecordingChannel()


@pytest.fixture
def channels(console_channel):
    return {ChannelType.CONSOLE: console_channel}


def make_rule(rule_id="latency", threshold=500, operator="gt", severity="high", frequency=300,
              channels=None, escalation=None, suppression=None, auto_resolve=False,
              query="avg(response_time)", interval=30, enabled=True):
    """Build an AlertRule from the YAML-style dict form."""
    from alerts.rules_manager import parse_rule

    return parse_rule({
        "id": rule_id,
        "name": rule_id.replace("_", " ").title(),
        "severity": severity,
        "frequency": frequency,
        "enabled": enabled,
        "auto_resolve": auto_resolve,
        "condition": {
            "query": query,
            "operator": operator,
            "threshold": threshold,
            "time_window": 300,
            "evaluation_interval": interval,
        },
        "channels": channels if channels is not None else [
            {"id": "ops-console", "type": "console", "recipients": ["oncall"], "rate_limit_minutes": 0},
        ],
        "escalation": escalation or [],
        "suppression": suppression or [],
    })
