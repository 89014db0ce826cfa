from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from syncrelay.core.config import get_settings
from syncrelay.core.errors import ExternalServiceError
from syncrelay.models.enums import EventSource, EventStatus, JobStatus, JobType, OptoutStatus, SyncStatus
from syncrelay.models.events import WebhookEvent
from syncrelay.models.jobs import BgJob
from syncrelay.models.sync_log import SyncLogEntry
from syncrelay.services.compliance import record_optout
from syncrelay.services.ingest.ingest import ingest_webhook
from syncrelay.worker.queue import enqueue_job
from syncrelay.worker.runner import WorkerConfig, backoff_seconds, run_one_job, seed_periodic_jobs


def _config() -> WorkerConfig:
    return WorkerConfig(worker_id=f"w-{uuid4()}")


def _ingest(db_session: Session, source: EventSource, body: dict):
    return ingest_webhook(session=db_session, settings=get_settings(), source=source, body=body)


def _sync_rows(db_session: Session) -> list[SyncLogEntry]:
    db_session.expire_all()
    return list(db_session.execute(select(SyncLogEntry).order_by(SyncLogEntry.started_at)).scalars().all())


def test_backoff_doubles_and_caps() -> None:
    config = WorkerConfig(backoff_base_seconds=1.0, backoff_max_seconds=300.0)
    assert backoff_seconds(config=config, attempts=1) == 1.0
    assert backoff_seconds(config=config, attempts=2) == 2.0
    assert backoff_seconds(config=config, attempts=3) == 4.0
    assert backoff_seconds(config=config, attempts=10) == 300.0


def test_idle_worker_reports_no_job(db_session: Session, runtime) -> None:
    _ = db_session
    assert run_one_job(config=_config(), runtime=runtime) is False


def test_duplicate_contact_updated_is_synced_once(db_session: Session, runtime, fake_clients) -> None:
    body = {"event": "Contact-Updated", "id": 42, "first_name": "Ada", "phone": "5551234567"}
    first = _ingest(db_session, EventSource.telephony, body)
    second = _ingest(db_session, EventSource.telephony, dict(body))
    assert first.status == "accepted"
    assert second.status == "duplicate"

    assert run_one_job(config=_config(), runtime=runtime) is True
    assert run_one_job(config=_config(), runtime=runtime) is False

    db_session.expire_all()
    events = db_session.execute(select(WebhookEvent)).scalars().all()
    assert len(events) == 1
    assert events[0].status == EventStatus.done
    assert events[0].processed_at is not None

    rows = _sync_rows(db_session)
    assert len(rows) == 1
    assert rows[0].entity_id == "42"
    assert rows[0].status == SyncStatus.skipped
    assert rows[0].correlation_id == str(events[0].id)
    assert fake_clients.crm.calls == []


def test_transient_failure_requeues_then_recovers(db_session: Session, runtime, fake_clients) -> None:
    result = _ingest(db_session, EventSource.crm, {"type": "contact.updated", "id": "crm-1"})
    fake_clients.crm.fail_with = ExternalServiceError(
        service="crm", message="HTTP 503 GET /contacts/crm-1", status_code=503, transient=True
    )

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    event = db_session.get(WebhookEvent, result.event_id)
    assert event is not None
    assert event.status == EventStatus.error
    assert "crm API error" in (event.error_message or "")

    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.queued
    assert job.attempts == 1
    assert job.attempts < job.max_attempts
    assert job.last_error
    assert job.locked_by is None
    assert db_session.execute(text("SELECT run_at > now() FROM bg_jobs WHERE id = :id"), {"id": str(job.id)}).scalar()

    rows = _sync_rows(db_session)
    assert [r.status for r in rows] == [SyncStatus.error]

    # Second attempt: the system is back and the retry re-claims the errored event.
    fake_clients.crm.fail_with = None
    fake_clients.crm.records[("contact", "crm-1")] = {"firstName": "Ada", "lastName": "Lovelace", "phone": "+15551234567"}
    db_session.execute(text("UPDATE bg_jobs SET run_at = now() WHERE id = :id"), {"id": str(job.id)})
    db_session.commit()

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    event = db_session.get(WebhookEvent, result.event_id)
    job = db_session.get(BgJob, job.id)
    assert event.status == EventStatus.done
    assert job.status == JobStatus.succeeded
    assert [r.status for r in _sync_rows(db_session)] == [SyncStatus.error, SyncStatus.success]
    assert fake_clients.telephony.names()[-1] == "upsert"


def test_permanent_external_error_dead_letters(db_session: Session, runtime, fake_clients) -> None:
    _ingest(db_session, EventSource.crm, {"type": "contact.updated", "id": "crm-2"})
    fake_clients.crm.fail_with = ExternalServiceError(
        service="crm", message="HTTP 422 GET /contacts/crm-2", status_code=422, transient=False
    )

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.failed
    assert job.attempts == 1
    assert "422" in (job.last_error or "")


def test_exhausted_attempts_dead_letter(db_session: Session, runtime, fake_clients) -> None:
    _ingest(db_session, EventSource.crm, {"type": "contact.updated", "id": "crm-3"})
    db_session.execute(text("UPDATE bg_jobs SET attempts = max_attempts - 1"))
    db_session.commit()
    fake_clients.crm.fail_with = ExternalServiceError(service="crm", message="timeout", transient=True)

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.failed
    assert job.attempts == job.max_attempts


def test_opted_out_recipient_dead_letters_without_sending(db_session: Session, runtime, fake_clients) -> None:
    record_optout(
        db_session,
        phone_number="(555) 123-4567",
        status=OptoutStatus.opted_out,
        source="test",
        reason="STOP",
    )
    _ingest(
        db_session,
        EventSource.crm,
        {"type": "outbound.message", "id": "om-1", "phone": "5551234567", "message": "Big sale today"},
    )

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.failed
    assert "opted out" in (job.last_error or "")
    assert fake_clients.messaging.calls == []
    assert [r.status for r in _sync_rows(db_session)] == [SyncStatus.error]


def test_periodic_job_reschedules_itself(db_session: Session, runtime) -> None:
    enqueue_job(
        session=db_session,
        job_type=JobType.alert_check,
        event_id=None,
        payload={"reason": "test"},
        dedupe_key=JobType.alert_check.value,
    )
    db_session.commit()

    assert run_one_job(config=_config(), runtime=runtime) is True

    db_session.expire_all()
    jobs = db_session.execute(select(BgJob).order_by(BgJob.created_at)).scalars().all()
    assert [j.status for j in jobs] == [JobStatus.succeeded, JobStatus.queued]
    assert all(j.type == JobType.alert_check for j in jobs)
    assert db_session.execute(
        text("SELECT run_at > now() FROM bg_jobs WHERE id = :id"), {"id": str(jobs[1].id)}
    ).scalar()


def test_seeding_periodic_jobs_is_idempotent(db_session: Session) -> None:
    seed_periodic_jobs(config=_config())
    seed_periodic_jobs(config=_config())

    db_session.expire_all()
    jobs = db_session.execute(select(BgJob)).scalars().all()
    assert sorted(j.type.value for j in jobs) == ["alert_check", "reconcile_contacts", "sweep_pending"]
    assert all(j.status == JobStatus.queued for j in jobs)


def test_dedupe_key_blocks_only_while_a_job_is_open(db_session: Session) -> None:
    def enqueue() -> object:
        job_id = enqueue_job(
            session=db_session,
            job_type=JobType.sweep_pending,
            event_id=None,
            payload={},
            dedupe_key=JobType.sweep_pending.value,
        )
        db_session.commit()
        return job_id

    first = enqueue()
    assert first is not None
    assert enqueue() is None

    db_session.execute(text("UPDATE bg_jobs SET status = 'succeeded' WHERE id = :id"), {"id": str(first)})
    db_session.commit()
    assert enqueue() is not None
    db_session.expire_all()
    assert len(db_session.execute(select(BgJob)).scalars().all()) == 2
