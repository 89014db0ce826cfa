from __future__ import annotations

from uuid import UUID, uuid4

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from syncrelay.core.config import get_settings
from syncrelay.core.errors import ExternalServiceError
from syncrelay.core.http import get_http_client
from syncrelay.main import create_app
from syncrelay.models.enums import EventSource, EventStatus, JobStatus
from syncrelay.models.events import QuarantineEntry, WebhookEvent
from syncrelay.models.jobs import BgJob
from syncrelay.services.ingest.ingest import ingest_webhook
from syncrelay.worker.queue import enqueue_event_processing
from syncrelay.worker.runner import WorkerConfig, run_one_job

ADMIN = {"x-admin-secret": "admin-test-secret"}


def _ingest(db_session: Session, entity_id: str, source: EventSource = EventSource.telephony) -> UUID:
    body = (
        {"event": "Contact-Updated", "id": entity_id}
        if source == EventSource.telephony
        else {"type": "contact.updated", "id": entity_id}
    )
    result = ingest_webhook(session=db_session, settings=get_settings(), source=source, body=body)
    assert result.event_id is not None
    return result.event_id


def _set_status(db_session: Session, event_id: UUID, status: str) -> None:
    db_session.execute(
        text("UPDATE webhook_events SET status = :status WHERE id = :id"),
        {"status": status, "id": str(event_id)},
    )
    db_session.commit()


def _dead_letter(db_session: Session, runtime, fake_clients, entity_id: str) -> UUID:
    event_id = _ingest(db_session, entity_id, source=EventSource.crm)
    fake_clients.crm.fail_with = ExternalServiceError(
        service="crm", message=f"HTTP 422 GET /contacts/{entity_id}", status_code=422
    )
    assert run_one_job(config=WorkerConfig(worker_id="ops-test"), runtime=runtime) is True
    fake_clients.crm.fail_with = None
    return event_id


def test_ops_requires_admin_secret(db_session: Session) -> None:
    _ = db_session
    client = TestClient(create_app())

    assert client.get("/ops/events").status_code == 401
    assert client.get("/ops/events", headers={"x-admin-secret": "wrong"}).status_code == 401
    assert client.get("/ops/jobs/dlq").status_code == 401
    assert client.post(f"/ops/events/{uuid4()}/replay").status_code == 401
    assert client.get("/ops/metrics/overview").status_code == 401
    assert client.get("/ops/events", headers=ADMIN).status_code == 200


def test_events_list_filters_and_flags_quarantine(db_session: Session) -> None:
    client = TestClient(create_app())
    done_id = _ingest(db_session, "e-1")
    pending_id = _ingest(db_session, "e-2")
    _set_status(db_session, done_id, "done")

    res = client.post(f"/ops/events/{pending_id}/quarantine", json={"reason": "bad payload"}, headers=ADMIN)
    assert res.status_code == 200

    all_items = client.get("/ops/events", headers=ADMIN).json()["items"]
    assert {i["id"] for i in all_items} == {str(done_id), str(pending_id)}
    flagged = {i["id"]: i["quarantined"] for i in all_items}
    assert flagged == {str(done_id): False, str(pending_id): True}

    done_only = client.get("/ops/events", params={"status": "done"}, headers=ADMIN).json()["items"]
    assert [i["id"] for i in done_only] == [str(done_id)]
    assert done_only[0]["source"] == "telephony"

    crm_only = client.get("/ops/events", params={"source": "crm"}, headers=ADMIN).json()["items"]
    assert crm_only == []


def test_event_replay(db_session: Session) -> None:
    client = TestClient(create_app())
    event_id = _ingest(db_session, "r-1")

    assert client.post(f"/ops/events/{uuid4()}/replay", headers=ADMIN).status_code == 404

    conflict = client.post(f"/ops/events/{event_id}/replay", headers=ADMIN)
    assert conflict.status_code == 409

    db_session.execute(text("DELETE FROM bg_jobs"))
    _set_status(db_session, event_id, "error")

    res = client.post(f"/ops/events/{event_id}/replay", headers=ADMIN)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "pending"
    assert body["event_id"] == str(event_id)
    assert body["job_id"]

    db_session.expire_all()
    assert db_session.get(WebhookEvent, event_id).status == EventStatus.pending
    job = db_session.execute(select(BgJob)).scalars().one()
    assert str(job.id) == body["job_id"]
    assert job.status == JobStatus.queued


def test_quarantine_and_release(db_session: Session) -> None:
    client = TestClient(create_app())
    event_id = _ingest(db_session, "q-1")
    headers = {**ADMIN, "x-operator": "alice"}

    first = client.post(f"/ops/events/{event_id}/quarantine", json={"reason": "poison"}, headers=headers)
    assert first.json() == {"status": "quarantined", "event_id": str(event_id)}
    again = client.post(f"/ops/events/{event_id}/quarantine", json={"reason": "poison"}, headers=headers)
    assert again.json()["status"] == "already_quarantined"

    entry = db_session.execute(select(QuarantineEntry)).scalars().one()
    assert entry.quarantined_by == "alice"
    assert entry.reason == "poison"

    assert client.post(f"/ops/events/{event_id}/quarantine", json={"reason": ""}, headers=ADMIN).status_code == 422
    assert client.post(f"/ops/events/{uuid4()}/quarantine", json={"reason": "x"}, headers=ADMIN).status_code == 404

    released = client.delete(f"/ops/events/{event_id}/quarantine", headers=ADMIN)
    assert released.json() == {"status": "released", "event_id": str(event_id)}
    assert client.delete(f"/ops/events/{event_id}/quarantine", headers=ADMIN).status_code == 404


def test_dlq_list_and_replay(db_session: Session, runtime, fake_clients) -> None:
    client = TestClient(create_app())
    event_id = _dead_letter(db_session, runtime, fake_clients, "crm-dlq-1")

    items = client.get("/ops/jobs/dlq", headers=ADMIN).json()["items"]
    assert len(items) == 1
    item = items[0]
    assert item["event_id"] == str(event_id)
    assert item["type"] == "process_event"
    assert item["status"] == "failed"
    assert "422" in item["last_error"]
    assert item["payload"] == {"event_id": str(event_id)}

    res = client.post(f"/ops/jobs/{item['id']}/replay", headers=ADMIN)
    assert res.status_code == 200
    assert res.json() == {"status": "queued", "job_id": item["id"]}

    db_session.expire_all()
    job = db_session.get(BgJob, UUID(item["id"]))
    assert job.status == JobStatus.queued
    assert job.attempts == 0
    assert job.last_error is None
    assert db_session.get(WebhookEvent, event_id).status == EventStatus.pending

    assert client.post(f"/ops/jobs/{item['id']}/replay", headers=ADMIN).status_code == 404

    # The replayed job now succeeds.
    fake_clients.crm.records[("contact", "crm-dlq-1")] = {"firstName": "Ada"}
    assert run_one_job(config=WorkerConfig(worker_id="ops-test"), runtime=runtime) is True
    db_session.expire_all()
    assert db_session.get(WebhookEvent, event_id).status == EventStatus.done


def test_dlq_replay_conflicts_with_active_job(db_session: Session, runtime, fake_clients) -> None:
    client = TestClient(create_app())
    event_id = _dead_letter(db_session, runtime, fake_clients, "crm-dlq-2")
    failed_job = db_session.execute(select(BgJob)).scalars().one()

    assert enqueue_event_processing(session=db_session, event_id=event_id) is not None
    db_session.commit()

    res = client.post(f"/ops/jobs/{failed_job.id}/replay", headers=ADMIN)
    assert res.status_code == 409

    db_session.expire_all()
    assert db_session.get(BgJob, failed_job.id).status == JobStatus.failed


def test_metrics_overview(db_session: Session, runtime, fake_clients) -> None:
    client = TestClient(create_app())
    _dead_letter(db_session, runtime, fake_clients, "crm-m-1")
    _ingest(db_session, "m-2")
    pending = _ingest(db_session, "m-3")
    db_session.execute(
        text("UPDATE webhook_events SET received_at = now() - interval '10 minutes' WHERE id = :id"),
        {"id": str(pending)},
    )
    db_session.commit()

    body = client.get("/ops/metrics/overview", headers=ADMIN).json()
    assert body["events_by_status"] == {"error": 1, "pending": 2}
    assert body["queued_jobs"] == 2
    assert body["running_jobs"] == 0
    assert body["failed_jobs_24h"] == 1
    assert body["sync_errors_24h"] == 1
    assert body["quarantined_events"] == 0
    assert body["opted_out_numbers"] == 0
    assert body["oldest_pending_age_seconds"] >= 590


def test_alert_check_endpoint(db_session: Session, monkeypatch) -> None:
    _ingest(db_session, "al-1")
    _ingest(db_session, "al-2")
    posted: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(request)
        return httpx.Response(204)

    monkeypatch.setenv("ALERT_PENDING_DEPTH_WARNING", "1")
    monkeypatch.setenv("ALERT_PENDING_DEPTH_CRITICAL", "100")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://alerts.test/hook")
    get_settings.cache_clear()
    try:
        app = create_app()

        def mock_http_client():
            with httpx.Client(transport=httpx.MockTransport(handler)) as http:
                yield http

        app.dependency_overrides[get_http_client] = mock_http_client
        res = TestClient(app).post("/ops/alerts/check", headers=ADMIN)
    finally:
        get_settings.cache_clear()

    assert res.status_code == 200
    alerts = res.json()["alerts"]
    assert [(a["metric"], a["level"]) for a in alerts] == [("pending_depth", "warning")]
    assert alerts[0]["metadata"]["value"] == 2
    assert len(posted) == 1


def test_ops_responses_carry_security_headers_and_request_id(db_session: Session) -> None:
    _ = db_session
    client = TestClient(create_app())

    res = client.get("/ops/events", headers={**ADMIN, "x-request-id": "req-123"})
    assert res.status_code == 200
    assert res.headers["x-request-id"] == "req-123"
    assert res.headers["x-content-type-options"] == "nosniff"
    assert res.headers["x-frame-options"] == "DENY"
    assert res.headers["cache-control"] == "no-store"

    denied = client.get("/ops/events")
    assert denied.status_code == 401
    assert denied.headers["x-request-id"]
