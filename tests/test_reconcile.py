from __future__ import annotations

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from syncrelay.models.enums import JobStatus, JobType, SyncStatus
from syncrelay.models.jobs import BgJob
from syncrelay.models.sync_log import SyncLogEntry
from syncrelay.services.identity import upsert_mapping
from syncrelay.worker.queue import enqueue_job
from syncrelay.worker.reconcile import reconcile_contacts
from syncrelay.worker.runner import WorkerConfig, run_one_job


def _link(db_session: Session, crm_contact_id: str, telephony_contact_id: str, *, synced_minutes_ago: int = 0) -> None:
    upsert_mapping(db_session, crm_contact_id=crm_contact_id, telephony_contact_id=telephony_contact_id)
    db_session.execute(
        text(
            "UPDATE identity_mappings SET last_synced_at = now() - (:m || ' minutes')::interval "
            "WHERE crm_contact_id = :id"
        ),
        {"m": str(synced_minutes_ago), "id": crm_contact_id},
    )
    db_session.commit()


def _sync_rows(db_session: Session) -> list[SyncLogEntry]:
    db_session.expire_all()
    return list(db_session.execute(select(SyncLogEntry).order_by(SyncLogEntry.started_at)).scalars())


def test_linked_contacts_are_repushed_and_missing_ones_count_as_drift(
    db_session: Session, runtime, fake_clients
) -> None:
    fake_clients.crm.records[("contact", "c-1")] = {"id": "c-1", "firstName": "Ada", "phone": "+15551234567"}
    fake_clients.telephony.records[("contact", "t-1")] = {"id": "t-1", "firstName": "A", "phone": "+15551234567"}
    _link(db_session, "c-1", "t-1")
    _link(db_session, "c-gone", "t-2")

    result = reconcile_contacts(session=db_session, runtime=runtime)

    assert (result.total, result.repaired, result.drift, result.errors) == (2, 1, 1, 0)
    pushed = fake_clients.telephony.calls_named("upsert")
    assert len(pushed) == 1
    assert pushed[0][2]["id"] == "t-1"
    assert pushed[0][2]["firstName"] == "Ada"
    rows = _sync_rows(db_session)
    assert [(r.entity_id, r.status) for r in rows] == [("c-1", SyncStatus.success)]


def test_failures_are_counted_and_logged(db_session: Session, runtime, fake_clients) -> None:
    fake_clients.crm.records[("contact", "c-1")] = {"id": "c-1", "phone": "+15551234567"}
    _link(db_session, "c-1", "t-1")
    fake_clients.telephony.fail_with = RuntimeError("telephony unavailable")

    result = reconcile_contacts(session=db_session, runtime=runtime)

    assert (result.repaired, result.errors) == (0, 1)
    rows = _sync_rows(db_session)
    assert [r.status for r in rows] == [SyncStatus.error]
    assert rows[0].error_message == "telephony unavailable"


def test_batch_takes_least_recently_synced_first(db_session: Session, runtime, fake_clients) -> None:
    for crm_id in ("c-old", "c-new"):
        fake_clients.crm.records[("contact", crm_id)] = {"id": crm_id}
    _link(db_session, "c-new", "t-new", synced_minutes_ago=1)
    _link(db_session, "c-old", "t-old", synced_minutes_ago=90)

    result = reconcile_contacts(session=db_session, runtime=runtime, limit=1)

    assert result.total == 1
    assert [r.entity_id for r in _sync_rows(db_session)] == ["c-old"]


def test_reconcile_job_runs_and_reschedules(db_session: Session, runtime) -> None:
    enqueue_job(
        session=db_session,
        job_type=JobType.reconcile_contacts,
        event_id=None,
        payload={"reason": "test"},
        dedupe_key=JobType.reconcile_contacts.value,
    )
    db_session.commit()

    assert run_one_job(config=WorkerConfig(worker_id="test-worker"), runtime=runtime) is True

    db_session.expire_all()
    jobs = db_session.execute(select(BgJob).order_by(BgJob.created_at)).scalars().all()
    assert [j.status for j in jobs] == [JobStatus.succeeded, JobStatus.queued]
    assert all(j.type == JobType.reconcile_contacts for j in jobs)
