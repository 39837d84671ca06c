# tests/test_metrics_endpoint.py
from fastapi.testclient import TestClient

from caloric import monitoring
from caloric.app import app


def test_metrics_endpoint_returns_prometheus_format():
    client = TestClient(app)
    r = client.get("/metrics")
    assert r.status_code in (200, 404)
    if r.status_code == 200:
        assert "text/plain" in r.headers.get("content-type", "")
        assert "caloric_requests_total" in r.text


def test_domain_metrics_are_exported():
    monitoring.inc_search_cache("hit")
    monitoring.inc_detail_resolution("failed")
    monitoring.inc_tool_call("searchFoods", "ok")
    payload, _ = monitoring.prometheus_metrics_response()
    text = payload.decode()
    assert "caloric_search_cache_total" in text
    assert "caloric_detail_resolutions_total" in text
    assert "caloric_tool_calls_total" in text


def test_metric_helpers_never_raise():
    monitoring.observe_request(0.0, "/x", "GET", "200")
    monitoring.set_active_sessions(3)
    monitoring.inc_sessions_evicted(0)


def test_health_still_works():
    client = TestClient(app)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
