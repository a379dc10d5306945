"""Wires rules, metric source, lifecycle, dispatcher and projector onto the clock."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from alerts.conditions import ConditionEvaluator
from alerts.dispatcher import NotificationDispatcher, RetryPolicy
from alerts.escalation import EscalationActions
from alerts.lifecycle import AlertLifecycleManager, TickResult, ERROR
from alerts.suppression import SuppressionState
from utils.events import EventBus
from utils.rate_limiter import FixedWindowLimiter

logger = logging.getLogger("opsmonitor.monitor.engine")


class MonitoringEngine:
    """Owns the periodic loops.

    Every enabled rule gets its own periodic job at its
    ``evaluation_interval``. The clock thread only hands work off: each rule,
    the capacity refresh and the data collection run on their own
    single-worker executor, so a slow metric query in one of them never
    delays another. Work for one key is serialized, and a tick that comes due
    while the previous one is still pending is skipped rather than stacked.
    """

    def __init__(self, rules, lifecycle, clock, projector=None, bus=None,
                 concurrent=True, capacity_interval=86400, collection_interval=30,
                 alert_retention=7 * 86400):
        self.rules = rules
        self.lifecycle = lifecycle
        self.clock = clock
        self.projector = projector
        self.bus = bus
        self.concurrent = concurrent
        self.capacity_interval = capacity_interval
        self.collection_interval = collection_interval
        self.alert_retention = alert_retention
        self._rule_jobs = {}
        self._executors = {}
        self._pending = {}
        self._loops = []
        self._collectors = []
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self):
        return self._running

    def add_collector(self, callback):
        """Register a callable run on every data-collection tick."""
        self._collectors.append(callback)

    # --- Lifecycle ---

    def start(self):
        if self._running:
            return
        self._running = True
        self.sync_rules()
        if self.projector is not None:
            self._loops.append(self.clock.every(
                self.capacity_interval, self._offload, "capacity-refresh", self.refresh_capacity,
                name="capacity-refresh"))
        self._loops.append(self.clock.every(
            self.collection_interval, self._offload, "data-collection", self.collect,
            name="data-collection"))
        self.clock.start()
        logger.info(f"Monitoring engine started with {len(self._rule_jobs)} rules")

    def stop(self):
        with self._lock:
            was_running = self._running
            self._running = False
            handles = list(self._rule_jobs.values()) + self._loops
            executors = list(self._executors.values())
            self._rule_jobs.clear()
            self._executors.clear()
            self._pending.clear()
            self._loops = []
        for handle in handles:
            self.clock.cancel(handle)
        self.lifecycle.shutdown()
        for executor in executors:
            executor.shutdown(wait=False)
        if was_running:
            self.clock.stop()
            logger.info("Monitoring engine stopped")

    def sync_rules(self):
        """Match the periodic jobs to the current set of enabled rules."""
        enabled = {r.id: r for r in self.rules.get_enabled_rules()}
        with self._lock:
            for rule_id in list(self._rule_jobs):
                job = self._rule_jobs[rule_id]
                rule = enabled.get(rule_id)
                if rule is None or job.interval != rule.condition.evaluation_interval:
                    self.clock.cancel(job)
                    del self._rule_jobs[rule_id]
            for rule_id, rule in enabled.items():
                if rule_id not in self._rule_jobs:
                    self._rule_jobs[rule_id] = self.clock.every(
                        rule.condition.evaluation_interval, self.submit, rule_id,
                        name=f"evaluate:{rule_id}",
                    )
        return sorted(self._rule_jobs)

    # --- Work hand-off ---

    def _executor(self, key):
        with self._lock:
            executor = self._executors.get(key)
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=":".join(key))
                self._executors[key] = executor
            return executor

    def _offload(self, key, fn, *args):
        """Run ``fn`` on the worker for ``key``; None if its last run is still pending."""
        if not self.concurrent:
            return fn(*args)
        if isinstance(key, str):
            key = ("loop", key)
        with self._lock:
            pending = self._pending.get(key)
            if pending is not None and not pending.done():
                logger.debug(f"Skipping {':'.join(key)}: previous run still in progress")
                return None
        future = self._executor(key).submit(fn, *args)
        with self._lock:
            self._pending[key] = future
        return future

    def submit(self, rule_id):
        """Queue one evaluation of a rule on its own worker."""
        return self._offload(("rule", rule_id), self.evaluate, rule_id)

    # --- Rule evaluation ---

    def evaluate(self, rule_id):
        rule = self.rules.get_rule(rule_id)
        if rule is None:
            logger.debug(f"Rule {rule_id} no longer exists")
            return None
        try:
            return self.lifecycle.evaluate_rule(rule)
        except Exception as e:
            logger.error(f"Evaluation of {rule_id} raised: {e}", exc_info=True)
            return TickResult(rule_id, ERROR, error=str(e))

    def check_all(self):
        """Evaluate every enabled rule once, in rule order."""
        return [self.evaluate(rule.id) for rule in self.rules.get_enabled_rules()]

    # --- Other loops ---

    def refresh_capacity(self):
        if self.projector is None:
            return []
        return self.projector.recompute_all()

    def collect(self):
        for callback in list(self._collectors):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Collector error: {e}")
        self.lifecycle.prune_resolved(self.alert_retention)
        if self._running:
            self.sync_rules()


def build_engine(config, rules, source, channels, clock, store=None, bus=None,
                 projector=None, suppression=None):
    """Assemble an engine from config and injected collaborators."""
    alerts_cfg = config.get("alerts", {})
    notif_cfg = config.get("notifications", {})
    monitoring_cfg = config.get("monitoring", {})
    retry_cfg = notif_cfg.get("retry", {})

    bus = bus or EventBus()
    dispatcher = NotificationDispatcher(
        channels,
        clock,
        limiter=FixedWindowLimiter(),
        retry=RetryPolicy(
            max_retries=retry_cfg.get("max_retries", 0),
            backoff_seconds=retry_cfg.get("backoff_seconds", 1),
            max_backoff=retry_cfg.get("max_backoff_seconds", 30),
        ),
        send_timeout=notif_cfg.get("send_timeout_seconds", 10),
        parallel=notif_cfg.get("parallel", True),
        templates=notif_cfg.get("templates"),
        store=store,
    )
    lifecycle = AlertLifecycleManager(
        rules,
        source,
        dispatcher,
        clock,
        bus=bus,
        store=store,
        suppression=suppression or SuppressionState(clock),
        evaluator=ConditionEvaluator(alerts_cfg.get("epsilon")),
        actions=EscalationActions(bus),
        meta_alert_after=alerts_cfg.get("meta_alert_after_failures", 5),
    )
    return MonitoringEngine(
        rules,
        lifecycle,
        clock,
        projector=projector,
        bus=bus,
        concurrent=monitoring_cfg.get("concurrent", True),
        capacity_interval=config.get("capacity", {}).get("refresh_interval", 86400),
        collection_interval=monitoring_cfg.get("collection_interval", 30),
        alert_retention=alerts_cfg.get("retention_seconds", 7 * 86400),
    )
