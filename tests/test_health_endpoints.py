from __future__ import annotations

from services.metrics import increment_stk_push


def test_health_reports_mode(client):
    r = client.get("/health")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["ok"] is True
    assert data["mpesa_mode"] == "sandbox"
    assert data["mpesa_simulated"] is True
    assert data["payment_store"] == "memory"


def test_healthz_without_database(client):
    r = client.get("/healthz")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["ok"] is True
    assert data["db_ok"] is None


def test_metrics_prometheus_text(client):
    increment_stk_push("accepted")
    r = client.get("/metrics")
    assert r.status_code == 200, r.text
    assert r.headers["content-type"].startswith("text/plain")
    assert "# TYPE stk_push_total counter" in r.text
    assert 'stk_push_total{result="accepted"} 1' in r.text
