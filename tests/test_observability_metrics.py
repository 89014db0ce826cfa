from __future__ import annotations

from fastapi.testclient import TestClient

from syncrelay.core.config import get_settings
from syncrelay.main import create_app


def test_metrics_endpoint_exposes_http_metrics() -> None:
    app = create_app()
    client = TestClient(app)

    assert client.get("/healthz").status_code == 200
    assert client.get("/readyz").status_code == 200

    res = client.get("/metrics")
    assert res.status_code == 200
    assert "text/plain" in (res.headers.get("content-type") or "")

    body = res.text
    assert "syncrelay_http_requests_total" in body
    assert "syncrelay_http_request_duration_seconds" in body
    assert 'path="/healthz"' in body


def test_metrics_endpoint_counts_webhooks(db_session) -> None:
    _ = db_session
    app = create_app()
    client = TestClient(app)

    res = client.post(
        "/webhooks/messaging",
        json={"type": "message.received"},
        headers={"x-messaging-secret": "wrong"},
    )
    assert res.status_code == 401

    lines = client.get("/metrics").text.splitlines()
    assert any(
        line.startswith("syncrelay_webhooks_total{")
        and 'source="messaging"' in line
        and 'outcome="rejected"' in line
        for line in lines
    )


def test_metrics_endpoint_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_PROMETHEUS_METRICS", "false")
    get_settings.cache_clear()
    try:
        app = create_app()
        client = TestClient(app)
        assert client.get("/metrics").status_code == 404
    finally:
        get_settings.cache_clear()
