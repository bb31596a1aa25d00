from __future__ import annotations

from counterhub.observability import MetricsRegistry


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    client.post("/counters/deaths/increment")

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "counterhub_requests_total" in body
    assert "counterhub_requests_5xx_total" in body
    assert 'counterhub_mutations_applied_total{counter="deaths",operation="increment"} 1' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_event_counts_match_label_subsets() -> None:
    metrics = MetricsRegistry()
    metrics.record_event("webhook_deliveries", status="delivered")
    metrics.record_event("webhook_deliveries", status="delivered")
    metrics.record_event("webhook_deliveries", status="failed")
    metrics.record_event("realtime_dropped")

    assert metrics.event_count("webhook_deliveries") == 3
    assert metrics.event_count("webhook_deliveries", status="delivered") == 2
    assert metrics.event_count("webhook_deliveries", status="dropped") == 0

    text = metrics.to_prometheus()
    assert "# TYPE counterhub_webhook_deliveries_total counter" in text
    assert 'counterhub_webhook_deliveries_total{status="failed"} 1' in text
    assert "counterhub_realtime_dropped_total 1" in text
