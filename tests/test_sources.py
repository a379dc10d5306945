"""Tests for metric sources and the HTTP client."""
from unittest.mock import MagicMock

import pytest
import requests

from models.alerts import MetricQuery
from models.enums import Aggregation
from monitor.sources import HTTPMetricSource, StaticMetricSource, build_metric_source
from utils.errors import TransientSourceError
from utils.http_client import APIError, HTTPClient


def test_static_source_lookup_order():
    source = StaticMetricSource({"response_time": 120, 'avg(response_time){region="eu"}': 300})
    assert source.query("avg(response_time)") == 120.0
    assert source.query('avg(response_time){region="eu"}') == 300.0
    assert source.query("error_rate") is None


def test_static_source_callable_and_failure():
    values = iter([1, 2, 3])
    source = StaticMetricSource()
    source.set("cpu_usage", lambda: next(values))
    assert source.query("cpu_usage") == 1.0
    assert source.query("cpu_usage") == 2.0

    source.fail("cpu_usage", "timeout")
    with pytest.raises(TransientSourceError):
        source.query("max(cpu_usage)")
    source.clear_failure("cpu_usage")
    assert source.query("cpu_usage") == 3.0


def test_to_promql():
    q = MetricQuery.parse('response_time{region="eu"}')
    assert HTTPMetricSource.to_promql(q, Aggregation.AVG, 300) == 'avg_over_time(response_time{region="eu"}[300s])'
    assert HTTPMetricSource.to_promql(q, Aggregation.RATE, 60) == 'rate(response_time{region="eu"}[60s])'


def test_http_source_parses_vector():
    client = MagicMock()
    client.get.return_value = {"status": "success", "data": {"result": [{"value": [1700000000, "512.5"]}]}}
    source = HTTPMetricSource("http://prom:9090", client=client)
    assert source.query("max(response_time)", Aggregation.AVG, 120) == 512.5
    assert client.get.call_args[1]["params"]["query"] == "max_over_time(response_time[120s])"


def test_http_source_empty_result():
    client = MagicMock()
    client.get.return_value = {"data": {"result": []}}
    assert HTTPMetricSource("http://prom", client=client).query("cpu_usage") is None


def test_http_source_wraps_errors():
    client = MagicMock()
    client.get.side_effect = APIError("HTTP 503", status_code=503)
    with pytest.raises(TransientSourceError):
        HTTPMetricSource("http://prom", client=client).query("cpu_usage")

    client.get.side_effect = None
    client.get.return_value = "<html>"
    with pytest.raises(TransientSourceError):
        HTTPMetricSource("http://prom", client=client).query("cpu_usage")


def test_build_metric_source():
    assert isinstance(build_metric_source({"metrics": {"source": "static"}}), StaticMetricSource)
    src = build_metric_source({"metrics": {"source": "http", "base_url": "http://prom:9090/"}})
    assert isinstance(src, HTTPMetricSource)
    assert src.client.base_url == "http://prom:9090"


# ── HTTP client ─────────────────────────────────────────

def _resp(status, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = {}
    resp.text = str(body)
    resp.json.return_value = body
    return resp


def test_http_client_retries_5xx_then_succeeds():
    sleeps = []
    client = HTTPClient("http://api", max_retries=2, sleep=sleeps.append)
    client.session = MagicMock()
    client.session.request.side_effect = [_resp(503), _resp(200, {"ok": True})]
    assert client.get("/x") == {"ok": True}
    assert sleeps == [1]


def test_http_client_4xx_fails_fast():
    client = HTTPClient("http://api", max_retries=3, sleep=lambda s: None)
    client.session = MagicMock()
    client.session.request.return_value = _resp(404)
    with pytest.raises(APIError) as exc:
        client.get("/missing")
    assert exc.value.status_code == 404
    assert client.session.request.call_count == 1


def test_http_client_connection_errors_exhaust_retries():
    client = HTTPClient("http://api", max_retries=1, sleep=lambda s: None)
    client.session = MagicMock()
    client.session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(APIError):
        client.get("/x")
    assert client.session.request.call_count == 2
