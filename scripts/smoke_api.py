from __future__ import annotations

import os
import sys
import time

import httpx
import orjson

from syncrelay.core.security import compute_hmac_signature


def _assert_ok(response: httpx.Response, *, label: str) -> None:
    if response.status_code >= 400:
        raise RuntimeError(f"{label} failed: HTTP {response.status_code} body={response.text}")


def main() -> None:
    base_url = os.environ.get("API_BASE_URL", "http://localhost:8000")
    crm_secret = os.environ.get("CRM_WEBHOOK_SECRET", "")
    admin_secret = os.environ.get("ADMIN_SECRET", "")
    if not crm_secret or not admin_secret:
        raise RuntimeError("CRM_WEBHOOK_SECRET and ADMIN_SECRET must be set")

    admin = {"x-admin-secret": admin_secret}
    with httpx.Client(base_url=base_url, timeout=20.0) as client:
        health = client.get("/healthz")
        _assert_ok(health, label="GET /healthz")
        print("ok: GET /healthz")

        ready = client.get("/readyz")
        _assert_ok(ready, label="GET /readyz")
        print("ok: GET /readyz")

        body = orjson.dumps(
            {"type": "contact.updated", "id": f"smoke-{int(time.time())}", "webhookId": f"smoke-{time.time_ns()}"}
        )
        webhook = client.post(
            "/webhooks/crm",
            content=body,
            headers={
                "content-type": "application/json",
                "x-signature": compute_hmac_signature(secret=crm_secret, body=body),
            },
        )
        _assert_ok(webhook, label="POST /webhooks/crm")
        ack = webhook.json()
        print(f"ok: POST /webhooks/crm status={ack['status']}")

        events = client.get("/ops/events", params={"source": "crm", "limit": 5}, headers=admin)
        _assert_ok(events, label="GET /ops/events")
        print("ok: GET /ops/events")

        ops_metrics = client.get("/ops/metrics/overview", headers=admin)
        _assert_ok(ops_metrics, label="GET /ops/metrics/overview")
        print("ok: GET /ops/metrics/overview")

        print(f"smoke complete: event={ack.get('event_id')} by_status={ops_metrics.json()['events_by_status']}")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # noqa: BLE001
        print(f"smoke failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
