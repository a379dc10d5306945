"""Metric sources: answer point-in-time queries for the alert and capacity loops."""
import logging
import threading
from typing import Optional, Protocol, runtime_checkable

from models.alerts import MetricQuery
from models.enums import Aggregation
from utils.errors import TransientSourceError
from utils.http_client import HTTPClient, APIError

logger = logging.getLogger("opsmonitor.monitor.sources")


@runtime_checkable
class MetricSource(Protocol):
    def query(self, expression: MetricQuery, aggregation: Aggregation, window: float) -> Optional[float]: ...


class StaticMetricSource:
    """In-memory source fed by ``set()``; used for dry runs and tests.

    Values are looked up by the full rendered query first, then by bare
    metric name. A value may be a callable taking no arguments. ``fail()``
    makes subsequent queries for a metric raise ``TransientSourceError``.
    """

    def __init__(self, values=None):
        self._values = dict(values or {})
        self._failures = {}
        self._lock = threading.Lock()
        self.queries = []

    def set(self, metric, value):
        with self._lock:
            self._values[str(metric)] = value
            self._failures.pop(str(metric), None)

    def fail(self, metric, message="metric backend unavailable"):
        with self._lock:
            self._failures[str(metric)] = message

    def clear_failure(self, metric):
        with self._lock:
            self._failures.pop(str(metric), None)

    def query(self, expression, aggregation=Aggregation.AVG, window=300):
        expression = MetricQuery.parse(expression)
        with self._lock:
            self.queries.append((str(expression), aggregation, window))
            for key in (str(expression), expression.metric):
                if key in self._failures:
                    raise TransientSourceError(self._failures[key], source="static", query=str(expression))
            value = self._values.get(str(expression), self._values.get(expression.metric))
        if callable(value):
            value = value()
        return None if value is None else float(value)


class HTTPMetricSource:
    """Prometheus-compatible HTTP API source (``/api/v1/query``)."""

    def __init__(self, base_url, timeout=10, max_retries=1, headers=None, client=None):
        self.client = client or HTTPClient(base_url, timeout=timeout, max_retries=max_retries, headers=headers)

    @staticmethod
    def to_promql(expression, aggregation, window):
        selector = expression.metric
        if expression.filters:
            selector += "{" + ",".join(f'{k}="{v}"' for k, v in expression.filters) + "}"
        rng = f"[{int(window)}s]"
        if aggregation == Aggregation.RATE:
            return f"rate({selector}{rng})"
        return f"{aggregation.value}_over_time({selector}{rng})"

    def query(self, expression, aggregation=Aggregation.AVG, window=300):
        expression = MetricQuery.parse(expression)
        agg = expression.aggregation or aggregation
        promql = self.to_promql(expression, agg, window)
        try:
            data = self.client.get("/api/v1/query", params={"query": promql})
        except APIError as e:
            raise TransientSourceError(f"Metric query failed: {e}", source="http", query=promql)

        try:
            results = data["data"]["result"]
        except (KeyError, TypeError):
            raise TransientSourceError(f"Unexpected response for {promql}", source="http", query=promql)
        if not results:
            logger.debug(f"No samples for {promql}")
            return None
        return float(results[0]["value"][1])


def build_metric_source(config):
    """Create the metric source described by the ``metrics`` config section."""
    metrics_cfg = config.get("metrics", {})
    kind = metrics_cfg.get("source", "static")
    if kind == "http":
        return HTTPMetricSource(
            metrics_cfg["base_url"],
            timeout=metrics_cfg.get("timeout_seconds", 10),
            max_retries=metrics_cfg.get("max_retries", 1),
        )
    return StaticMetricSource(metrics_cfg.get("static_values", {}))
