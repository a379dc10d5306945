"""SQLite store for alert history, notification log, capacity plans and performance tests."""
import json
import sqlite3
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from models.alerts import Alert
from models.capacity import CapacityPlan
from models.performance import PerformanceTest, TestResult

logger = logging.getLogger("opsmonitor.db")


class Database:
    def __init__(self, db_path="data/opsmonitor.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.Lock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS alert_history (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                rule_name TEXT NOT NULL,
                severity TEXT NOT NULL,
                status TEXT NOT NULL,
                first_triggered_at TEXT NOT NULL,
                last_seen_at TEXT,
                acknowledged_at TEXT,
                resolved_at TEXT,
                acknowledged_by TEXT,
                escalation_level INTEGER DEFAULT 0,
                metric_value REAL,
                threshold REAL,
                message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alert_history(first_triggered_at);
            CREATE INDEX IF NOT EXISTS idx_alerts_rule
                ON alert_history(rule_id, status);

            CREATE TABLE IF NOT EXISTS notification_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                event_kind TEXT NOT NULL,
                outcome TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                error TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_notification_alert
                ON notification_log(alert_id);

            CREATE TABLE IF NOT EXISTS capacity_plans (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                last_updated TEXT
            );

            CREATE TABLE IF NOT EXISTS performance_tests (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS test_results (
                id TEXT PRIMARY KEY,
                test_id TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                regression INTEGER DEFAULT 0,
                data TEXT NOT NULL,
                FOREIGN KEY (test_id) REFERENCES performance_tests(id)
            );

            CREATE INDEX IF NOT EXISTS idx_results_test
                ON test_results(test_id, recorded_at);
        """)
        self.conn.commit()

    def _write(self, sql, params=()):
        with self._lock:
            self.conn.execute(sql, params)
            self.conn.commit()

    # --- Alert History ---

    def save_alert(self, alert: Alert):
        d = alert.to_dict()
        self._write("""
            INSERT OR REPLACE INTO alert_history
            (id, rule_id, rule_name, severity, status, first_triggered_at, last_seen_at,
             acknowledged_at, resolved_at, acknowledged_by, escalation_level, metric_value,
             threshold, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            d["id"], d["rule_id"], d["rule_name"], d["severity"], d["status"],
            d["first_triggered_at"], d["last_seen_at"], d["acknowledged_at"],
            d["resolved_at"], d["acknowledged_by"], d["escalation_level"],
            d["metric_value"], d["threshold"], d["message"],
        ))

    def get_alert(self, alert_id):
        row = self.conn.execute("SELECT * FROM alert_history WHERE id = ?", (alert_id,)).fetchone()
        return Alert.from_dict(dict(row)) if row else None

    def get_open_alerts(self):
        rows = self.conn.execute("""
            SELECT * FROM alert_history WHERE status != 'resolved'
            ORDER BY first_triggered_at ASC
        """).fetchall()
        return [Alert.from_dict(dict(r)) for r in rows]

    def get_recent_alerts(self, limit=50, since=None):
        query = "SELECT * FROM alert_history"
        params = []
        if since:
            query += " WHERE first_triggered_at >= ?"
            params.append(since.isoformat())
        query += " ORDER BY first_triggered_at DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def get_alert_stats(self, days=30, now=None):
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=days)).isoformat()
        rows = self.conn.execute("""
            SELECT severity, COUNT(*) as count
            FROM alert_history
            WHERE first_triggered_at >= ?
            GROUP BY severity
        """, (cutoff,)).fetchall()
        return {r["severity"]: r["count"] for r in rows}

    # --- Notification Log ---

    def log_dispatch(self, report, now=None):
        now = now or datetime.now(timezone.utc)
        with self._lock:
            self.conn.executemany("""
                INSERT INTO notification_log
                (alert_id, rule_id, channel_id, event_kind, outcome, attempts, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (report.alert_id, report.rule_id, o.channel_id, report.event_kind.value,
                 o.outcome.value, o.attempts, o.error, now.isoformat())
                for o in report.outcomes
            ])
            self.conn.commit()

    def get_notification_log(self, alert_id=None, limit=100):
        query = "SELECT * FROM notification_log"
        params = []
        if alert_id:
            query += " WHERE alert_id = ?"
            params.append(alert_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [dict(r) for r in self.conn.execute(query, params).fetchall()]

    # --- Capacity Plans ---

    def save_plan(self, plan: CapacityPlan):
        d = plan.to_dict()
        self._write("""
            INSERT OR REPLACE INTO capacity_plans (id, data, last_updated) VALUES (?, ?, ?)
        """, (plan.id, json.dumps(d), d["last_updated"]))

    def get_plan(self, plan_id):
        row = self.conn.execute("SELECT data FROM capacity_plans WHERE id = ?", (plan_id,)).fetchone()
        return CapacityPlan.from_dict(json.loads(row["data"])) if row else None

    def list_plans(self):
        rows = self.conn.execute("SELECT data FROM capacity_plans ORDER BY id").fetchall()
        return [CapacityPlan.from_dict(json.loads(r["data"])) for r in rows]

    # --- Performance Tests ---

    def save_test(self, test: PerformanceTest):
        self._write("""
            INSERT OR REPLACE INTO performance_tests (id, data) VALUES (?, ?)
        """, (test.id, json.dumps(test.to_dict())))

    def save_result(self, result: TestResult):
        self._write("""
            INSERT INTO test_results (id, test_id, recorded_at, regression, data)
            VALUES (?, ?, ?, ?, ?)
        """, (result.id, result.test_id, result.timestamp.isoformat(),
              int(result.regression), json.dumps(result.to_dict())))

    def get_results(self, test_id):
        rows = self.conn.execute("""
            SELECT data FROM test_results WHERE test_id = ? ORDER BY recorded_at ASC, rowid ASC
        """, (test_id,)).fetchall()
        return [TestResult.from_dict(json.loads(r["data"])) for r in rows]

    def get_test(self, test_id):
        row = self.conn.execute("SELECT data FROM performance_tests WHERE id = ?", (test_id,)).fetchone()
        if not row:
            return None
        return PerformanceTest.from_dict(json.loads(row["data"]), results=self.get_results(test_id))

    def list_tests(self):
        rows = self.conn.execute("SELECT id FROM performance_tests ORDER BY id").fetchall()
        return [self.get_test(r["id"]) for r in rows]
