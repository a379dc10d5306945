"""Tests for configuration loading and validation."""
import pytest
import yaml

from config import load_config, _deep_merge
from utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("OPSMON_DB_PATH", "OPSMON_LOG_LEVEL", "OPSMON_METRICS_URL", "OPSMON_EVAL_INTERVAL"):
        monkeypatch.delenv(key, raising=False)


def _write(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults_load():
    config = load_config()
    assert config["monitoring"]["default_evaluation_interval"] == 30
    assert config["alerts"]["meta_alert_after_failures"] == 5
    assert config["capacity"]["utilization_threshold"] == 80
    assert config["notifications"]["retry"]["max_retries"] == 2
    assert config["metrics"]["source"] == "static"


def test_missing_override_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "nope.yaml"))
    assert config["database"]["path"]


def test_override_is_deep_merged(tmp_path):
    path = _write(tmp_path, {"notifications": {"retry": {"max_retries": 4}}})
    config = load_config(path)
    assert config["notifications"]["retry"]["max_retries"] == 4
    assert config["notifications"]["retry"]["backoff_seconds"] == 1
    assert config["notifications"]["send_timeout_seconds"] == 10


def test_deep_merge_does_not_mutate_base():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 5}, "d": 1})
    assert merged == {"a": {"b": 5, "c": 2}, "d": 1}
    assert base == {"a": {"b": 1, "c": 2}}


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("OPSMON_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("OPSMON_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("OPSMON_EVAL_INTERVAL", "15")
    config = load_config()
    assert config["database"]["path"] == str(tmp_path / "env.db")
    assert config["logging"]["level"] == "DEBUG"
    assert config["monitoring"]["default_evaluation_interval"] == 15


def test_metrics_url_switches_source(monkeypatch):
    monkeypatch.setenv("OPSMON_METRICS_URL", "http://prometheus:9090")
    config = load_config()
    assert config["metrics"]["source"] == "http"
    assert config["metrics"]["base_url"] == "http://prometheus:9090"


@pytest.mark.parametrize("override", [
    {"monitoring": {"collection_interval": 0}},
    {"monitoring": {"default_evaluation_interval": -5}},
    {"capacity": {"refresh_interval": "daily"}},
    {"capacity": {"utilization_threshold": 150}},
    {"notifications": {"send_timeout_seconds": 0}},
    {"metrics": {"source": "http", "base_url": None}},
])
def test_invalid_config_rejected(tmp_path, override):
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, override))


def test_bad_env_value_rejected(monkeypatch):
    monkeypatch.setenv("OPSMON_EVAL_INTERVAL", "often")
    with pytest.raises(ConfigurationError):
        load_config()
