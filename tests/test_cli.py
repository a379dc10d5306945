"""Tests for the CLI commands."""
import json

import pytest
import yaml
from click.testing import CliRunner

import main
from main import cli


@pytest.fixture
def runner(monkeypatch):
    # wide enough that table cells never fold
    monkeypatch.setattr(main.console, "width", 200)
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "database": {"path": str(tmp_path / "cli.db")},
        "logging": {"level": "ERROR"},
        "metrics": {"source": "static", "static_values": {"response_time": 900, "error_rate": 1, "cpu_usage": 40}},
    }))
    return str(path)


def _dump(tmp_path, name, data):
    path = tmp_path / name
    path.write_text(json.dumps(data))
    return str(path)


def test_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "Alerting, escalation" in result.output
    for group in ("rules", "alerts", "capacity", "perf", "run"):
        assert group in result.output


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "1.0.0" in result.output


def test_rules_list(runner, config_file):
    result = runner.invoke(cli, ["--config", config_file, "rules", "list"])
    assert result.exit_code == 0, result.output
    assert "high_response_time" in result.output


def test_rules_validate_reports_errors(runner, config_file, tmp_path):
    bad = tmp_path / "rules.yaml"
    bad.write_text(yaml.safe_dump({"rules": [
        {"id": "ok", "condition": {"query": "avg(cpu_usage)", "threshold": 90}},
        {"id": "broken", "severity": "apocalyptic", "condition": {"query": "avg(cpu_usage)", "threshold": 1}},
    ]}))
    result = runner.invoke(cli, ["--config", config_file, "rules", "validate", str(bad)])
    assert result.exit_code == 1
    assert "1 valid rule(s), 1 error(s)" in result.output


def test_rules_validate_default_file(runner, config_file):
    result = runner.invoke(cli, ["--config", config_file, "rules", "validate"])
    assert result.exit_code == 0, result.output
    assert "0 error(s)" in result.output


def test_alerts_test_is_dry_run(runner, config_file, tmp_path):
    result = runner.invoke(cli, ["--config", config_file, "alerts", "test"])
    assert result.exit_code == 0, result.output
    assert "YES" in result.output

    history = runner.invoke(cli, ["--config", config_file, "alerts", "history"])
    assert "No alerts in history" in history.output


def test_capacity_project_json(runner, config_file):
    result = runner.invoke(cli, ["--config", config_file, "capacity", "project", "--json"])
    assert result.exit_code == 0, result.output
    plans = json.loads(result.output)
    ids = {p["id"] for p in plans}
    assert {"compute_capacity", "storage_capacity"} <= ids


def test_perf_compare_regression_exits_nonzero(runner, config_file, tmp_path):
    baseline = _dump(tmp_path, "baseline.json", {"response_time": 200, "throughput": 100, "error_rate": 0.5})
    result = _dump(tmp_path, "result.json", {"response_time": {"avg": 300}, "throughput": 100, "error_rate": 0.5})
    out = runner.invoke(cli, ["--config", config_file, "perf", "compare", baseline, result, "--json"])
    assert out.exit_code == 1
    verdict = json.loads(out.output)
    assert verdict["regression"] is True
    assert [v["metric"] for v in verdict["violations"]] == ["response_time"]


def test_perf_compare_within_thresholds(runner, config_file, tmp_path):
    baseline = _dump(tmp_path, "baseline.json", {"response_time": 200, "throughput": 100, "error_rate": 0.5})
    result = _dump(tmp_path, "result.json", {"response_time": 190, "throughput": 110, "error_rate": 0.2})
    out = runner.invoke(cli, ["--config", config_file, "perf", "compare", baseline, result])
    assert out.exit_code == 0, out.output
    assert "all metrics within thresholds" in out.output
