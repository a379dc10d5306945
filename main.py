#!/usr/bin/env python3
"""Ops Monitor - CLI Entry Point."""
import sys
import json
import time
from datetime import datetime, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()

_SEVERITY_STYLE = {"low": "dim", "medium": "yellow", "high": "bold yellow", "critical": "bold red"}


def _load_config(ctx):
    if "_config" not in ctx.obj:
        from config import load_config
        from utils.logger import setup_logging

        config = load_config(ctx.obj.get("config_path"))
        level = "DEBUG" if ctx.obj.get("verbose") else config.get("logging", {}).get("level", "INFO")
        setup_logging(level, config.get("logging", {}).get("file"))
        ctx.obj["_config"] = config
    return ctx.obj["_config"]


def _init_components(config):
    """Lazy initialization of all components."""
    from config import DEFAULT_RULES_PATH, DEFAULT_PLANS_PATH
    from models.database import Database
    from monitor.clock import MonitoringClock
    from monitor.sources import build_metric_source
    from monitor.engine import build_engine
    from alerts.rules_manager import RulesManager
    from alerts.channels import build_channels
    from capacity.projector import CapacityProjector, load_plans
    from utils.events import EventBus

    db = Database(config["database"]["path"])
    db.connect()

    clock = MonitoringClock(tick_seconds=config["monitoring"].get("tick_seconds", 1))
    bus = EventBus(keep_history=200)
    source = build_metric_source(config)
    rules = RulesManager(
        config["alerts"].get("rules_path") or DEFAULT_RULES_PATH,
        default_interval=config["monitoring"]["default_evaluation_interval"],
    )

    cap = config["capacity"]
    projector = CapacityProjector(
        source, clock, bus=bus, store=db,
        threshold=cap.get("utilization_threshold", 80),
        critical_threshold=cap.get("critical_threshold", 95),
        window=cap.get("usage_window", 3600),
        plans=load_plans(cap.get("plans_path") or DEFAULT_PLANS_PATH),
    )

    engine = build_engine(
        config, rules, source, build_channels(config), clock,
        store=db, bus=bus, projector=projector,
    )
    return {
        "config": config, "db": db, "clock": clock, "bus": bus, "source": source,
        "rules": rules, "projector": projector, "engine": engine,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="opsmonitor")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Ops Monitor - Alerting, escalation, capacity projection & regression checks."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(_load_config(ctx))
        ctx.call_on_close(lambda: _shutdown(ctx.obj["_components"]))
    return ctx.obj["_components"]


def _shutdown(c):
    c["engine"].stop()
    c["engine"].lifecycle.shutdown()
    c["engine"].lifecycle.dispatcher.close()
    c["db"].close()


def _fmt_value(value):
    return f"{value:.2f}" if value is not None else "N/A"


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule definitions."""
    pass


@rules.command("list")
@click.pass_context
def rules_list(ctx):
    """List all configured alert rules."""
    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Every")
    table.add_column("Severity")
    table.add_column("Channels")
    table.add_column("Enabled")
    for r in c["rules"].get_all_rules():
        cond = r.condition
        table.add_row(
            r.id, r.name, f"{cond.query} {cond.operator.value} {cond.threshold:g}",
            f"{cond.evaluation_interval:g}s",
            f"[{_SEVERITY_STYLE[r.severity.value]}]{r.severity.value}[/]",
            ", ".join(ch.id for ch in r.channels) or "-",
            "[green]✓[/green]" if r.enabled else "[red]✗[/red]",
        )
    console.print(table)


@rules.command("validate")
@click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def rules_validate(ctx, path):
    """Validate a rules file (defaults to the configured one)."""
    from config import DEFAULT_RULES_PATH
    from alerts.rules_manager import RulesManager

    config = _load_config(ctx)
    manager = RulesManager(path or config["alerts"].get("rules_path") or DEFAULT_RULES_PATH)
    for err in manager.load_errors:
        console.print(f"[red]✗[/red] {err}")
    console.print(f"{len(manager.get_all_rules())} valid rule(s), {len(manager.load_errors)} error(s)")
    if manager.load_errors:
        ctx.exit(1)


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert evaluation and history."""
    pass


@alerts.command("check")
@click.pass_context
def alerts_check(ctx):
    """Evaluate all enabled alert rules once."""
    c = _get_components(ctx)
    results = [r for r in c["engine"].check_all() if r is not None]

    table = Table(title="Alert Check", show_header=True)
    table.add_column("Rule")
    table.add_column("Value")
    table.add_column("Outcome")
    table.add_column("Alert", style="dim")
    fired = 0
    for r in results:
        style = {"triggered": "bold yellow", "error": "red", "suppressed": "dim"}.get(r.action, "")
        outcome = f"[{style}]{r.action}[/]" if style else r.action
        if r.action == "error":
            outcome += f" ({r.error})"
        fired += r.action == "triggered"
        table.add_row(r.rule_id, _fmt_value(r.value), outcome, r.alert.id if r.alert else "")
    console.print(table)
    if fired:
        console.print(f"[bold yellow]{fired} alert(s) triggered[/bold yellow]")
    else:
        console.print("[green]All clear - no alerts triggered[/green]")


@alerts.command("test")
@click.pass_context
def alerts_test(ctx):
    """Dry-run every rule's condition; no alerts are raised or sent."""
    from alerts.conditions import ConditionEvaluator

    c = _get_components(ctx)
    evaluator = ConditionEvaluator(c["config"]["alerts"].get("epsilon"))

    table = Table(title="Alert Rules Test", show_header=True)
    table.add_column("Rule")
    table.add_column("Query")
    table.add_column("Condition")
    table.add_column("Current")
    table.add_column("Would Fire")
    table.add_column("Enabled")
    for rule in c["rules"].get_all_rules():
        cond = rule.condition
        try:
            value = c["source"].query(cond.query, cond.effective_aggregation, cond.time_window)
            fire = "[green]YES[/green]" if evaluator.evaluate(cond, value, rule.epsilon) else "[dim]no[/dim]"
        except Exception as e:
            value, fire = None, f"[red]error: {e}[/red]"
        table.add_row(rule.name, str(cond.query), f"{cond.operator.value} {cond.threshold:g}",
                      _fmt_value(value), fire, "✓" if rule.enabled else "✗")
    console.print(table)


@alerts.command("history")
@click.option("--days", default=7, help="Days to look back")
@click.pass_context
def alerts_history(ctx, days):
    """Show past alerts."""
    from utils.formatters import format_timestamp, time_ago

    c = _get_components(ctx)
    now = c["clock"].now()
    recent = c["db"].get_recent_alerts(limit=200, since=now - timedelta(days=days))
    if not recent:
        console.print("[dim]No alerts in history[/dim]")
        return
    table = Table(title=f"Alert History (last {days}d)", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Age", style="dim")
    table.add_column("Severity")
    table.add_column("Rule")
    table.add_column("Status")
    table.add_column("Level")
    table.add_column("Message")
    for a in recent[:50]:
        triggered = datetime.fromisoformat(a["first_triggered_at"])
        table.add_row(format_timestamp(triggered), time_ago(triggered, now=now), a["severity"],
                      a["rule_name"], a["status"], str(a["escalation_level"]), (a["message"] or "")[:60])
    console.print(table)

    stats = c["db"].get_alert_stats(days=days, now=now)
    console.print("  ".join(f"{sev}: {count}" for sev, count in sorted(stats.items())))


# ──────────────────────────────────────────────────────
# CAPACITY
# ──────────────────────────────────────────────────────
@cli.group()
def capacity():
    """Capacity planning."""
    pass


@capacity.command("project")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def capacity_project(ctx, as_json):
    """Recompute every capacity plan once and show the projections."""
    c = _get_components(ctx)
    plans = c["projector"].recompute_all()
    if as_json:
        click.echo(json.dumps([p.to_dict() for p in plans], indent=2))
        return

    table = Table(title="Capacity Projections", show_header=True)
    table.add_column("Plan")
    table.add_column("Resource")
    table.add_column("Current")
    table.add_column("Projected")
    table.add_column("Horizon")
    table.add_column("Recommendation")
    for p in plans:
        style = "bold red" if p.threshold_exceeded else "green"
        rec = p.recommendations[0].description if p.recommendations else "-"
        table.add_row(p.name, p.resource, f"{p.current_usage:.1f}%",
                      f"[{style}]{p.projected_usage:.1f}%[/{style}]", p.time_horizon, rec)
    console.print(table)


# ──────────────────────────────────────────────────────
# PERFORMANCE
# ──────────────────────────────────────────────────────
@cli.group()
def perf():
    """Performance regression checks."""
    pass


@perf.command("compare")
@click.argument("baseline_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("result_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Output verdict as JSON")
@click.pass_context
def perf_compare(ctx, baseline_file, result_file, as_json):
    """Compare a load-test RESULT against a BASELINE (exit 1 on regression)."""
    from models.performance import RegressionThresholds, TestResult, baseline_from_dict
    from perf.regression import RegressionDetector
    from utils.formatters import format_pct

    config = _load_config(ctx)
    with open(baseline_file) as f:
        baseline = baseline_from_dict(json.load(f))
    with open(result_file) as f:
        result = TestResult.from_dict(json.load(f))

    detector = RegressionDetector(RegressionThresholds(**config.get("performance", {}).get("thresholds", {})))
    verdict = detector.compare(baseline, result)

    if as_json:
        click.echo(json.dumps(verdict.to_dict(), indent=2))
    else:
        table = Table(title="Regression Check", show_header=True)
        table.add_column("Metric")
        table.add_column("Change")
        table.add_column("Verdict")
        violated = set(verdict.violated_metrics)
        for metric, delta in verdict.differences:
            change = f"{delta:+.2f} pts" if metric == "error_rate" else format_pct(delta * 100, 1)
            status = "[red]REGRESSION[/red]" if metric in violated else "[green]ok[/green]"
            table.add_row(metric, change, status)
        console.print(table)
        color = "red" if verdict.regression else "green"
        console.print(f"[{color}]{verdict.reason}[/{color}]")

    if verdict.regression:
        ctx.exit(1)


# ──────────────────────────────────────────────────────
# RUN
# ──────────────────────────────────────────────────────
@cli.command()
@click.pass_context
def run(ctx):
    """Start the monitoring loops until interrupted."""
    c = _get_components(ctx)
    engine = c["engine"]
    engine.start()
    console.print(f"[bold]Monitoring {len(c['rules'].get_enabled_rules())} rule(s)[/bold]. Ctrl+C to stop.")
    try:
        while engine.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/dim]")
    finally:
        engine.stop()


if __name__ == "__main__":
    cli()
