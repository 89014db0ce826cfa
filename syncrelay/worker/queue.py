from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from syncrelay.core.config import get_settings
from syncrelay.models.enums import JobStatus, JobType
from syncrelay.models.jobs import BgJob


def enqueue_job(
    *,
    session: Session,
    job_type: JobType,
    event_id: UUID | None,
    payload: dict,
    dedupe_key: str | None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> UUID | None:
    """Insert a queued job.

    Returns None when a queued or running job with the same (type, dedupe_key)
    already exists; the partial unique index on bg_jobs enforces that.
    """
    if max_attempts is None:
        max_attempts = get_settings().QUEUE_MAX_ATTEMPTS
    stmt = (
        insert(BgJob)
        .values(
            event_id=event_id,
            type=job_type,
            status=JobStatus.queued,
            run_at=run_at if run_at is not None else func.now(),
            attempts=0,
            max_attempts=max(1, max_attempts),
            dedupe_key=dedupe_key,
            payload=payload,
        )
        .on_conflict_do_nothing()
        .returning(BgJob.id)
    )
    return session.execute(stmt).scalar_one_or_none()


def event_dedupe_key(event_id: UUID) -> str:
    return f"{JobType.process_event.value}:{event_id}"


def enqueue_event_processing(*, session: Session, event_id: UUID) -> UUID | None:
    return enqueue_job(
        session=session,
        job_type=JobType.process_event,
        event_id=event_id,
        payload={"event_id": str(event_id)},
        dedupe_key=event_dedupe_key(event_id),
    )
