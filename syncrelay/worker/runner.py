from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.config import Settings
from syncrelay.core.logs import log_event
from syncrelay.core.otel import job_span
from syncrelay.db.session import session_scope
from syncrelay.models.enums import JobStatus, JobType
from syncrelay.worker.errors import PermanentJobError
from syncrelay.worker.handlers import handle_job
from syncrelay.worker.queue import enqueue_job
from syncrelay.worker.runtime import WorkerRuntime

logger = logging.getLogger("syncrelay.worker")

PERIODIC_JOB_TYPES = (JobType.sweep_pending, JobType.alert_check, JobType.reconcile_contacts)


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_seconds: float = 0.5
    sweep_interval_seconds: float = 300.0
    alert_check_interval_seconds: float = 300.0
    reconcile_interval_seconds: float = 3600.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    worker_id: str = socket.gethostname()

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
            sweep_interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            alert_check_interval_seconds=settings.ALERT_CHECK_INTERVAL_SECONDS,
            reconcile_interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
            backoff_base_seconds=settings.QUEUE_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.QUEUE_BACKOFF_MAX_SECONDS,
        )


def backoff_seconds(*, config: WorkerConfig, attempts: int) -> float:
    return min(config.backoff_max_seconds, config.backoff_base_seconds * (2 ** max(0, attempts - 1)))


def run_worker_forever(config: WorkerConfig, runtime: WorkerRuntime) -> None:
    seed_periodic_jobs(config=config)
    while True:
        ran = run_one_job(config=config, runtime=runtime)
        if not ran:
            time.sleep(config.poll_interval_seconds)


def seed_periodic_jobs(*, config: WorkerConfig) -> None:
    with session_scope() as session:
        for job_type in PERIODIC_JOB_TYPES:
            enqueue_job(
                session=session,
                job_type=job_type,
                event_id=None,
                payload={"reason": "worker_start"},
                dedupe_key=job_type.value,
            )
        session.commit()
    log_event(logger, "worker.periodic_jobs_seeded", worker_id=config.worker_id)


def run_one_job(*, config: WorkerConfig, runtime: WorkerRuntime) -> bool:
    with session_scope() as session:
        job = _claim_next_job(session=session, worker_id=config.worker_id)
        session.commit()
        if job is None:
            return False

        job_id = UUID(str(job["id"]))
        job_type = JobType(job["type"])
        try:
            with job_span(job_type.value, job_id=job_id, event_id=job["event_id"], attempts=job["attempts"]):
                handle_job(
                    session=session,
                    job_id=job_id,
                    job_type=job_type,
                    payload=job["payload"] or {},
                    runtime=runtime,
                    attempts=int(job["attempts"]),
                )
        except PermanentJobError as e:
            session.rollback()
            _mark_failed(session=session, config=config, job_id=job_id, job_type=job_type, error=str(e), permanent=True)
        except Exception as e:
            session.rollback()
            _mark_failed(session=session, config=config, job_id=job_id, job_type=job_type, error=str(e), permanent=False)
        else:
            _mark_succeeded(session=session, job_id=job_id)
            log_event(logger, "job.succeeded", job_id=str(job_id), job_type=job_type.value)

        _schedule_follow_up_jobs(session=session, config=config, job_type=job_type)
        session.commit()
        return True


def _claim_next_job(*, session: Session, worker_id: str) -> dict | None:
    sql = text(
        """
        WITH next_job AS (
          SELECT id
          FROM bg_jobs
          WHERE status = 'queued'
            AND run_at <= now()
          ORDER BY run_at ASC
          FOR UPDATE SKIP LOCKED
          LIMIT 1
        )
        UPDATE bg_jobs
        SET status = 'running',
            locked_at = now(),
            locked_by = :worker_id
        WHERE id IN (SELECT id FROM next_job)
        RETURNING id, event_id, type, payload, attempts, max_attempts
        """
    )
    row = session.execute(sql, {"worker_id": worker_id}).mappings().fetchone()
    if row is None:
        return None
    return dict(row)


def _mark_succeeded(*, session: Session, job_id: UUID) -> None:
    session.execute(
        text(
            """
            UPDATE bg_jobs
            SET status = :status,
                locked_at = NULL,
                locked_by = NULL,
                last_error = NULL
            WHERE id = :id
            """
        ),
        {"id": str(job_id), "status": JobStatus.succeeded.value},
    )


def _mark_failed(
    *,
    session: Session,
    config: WorkerConfig,
    job_id: UUID,
    job_type: JobType,
    error: str,
    permanent: bool,
) -> None:
    row = (
        session.execute(
            text("SELECT attempts, max_attempts FROM bg_jobs WHERE id = :id FOR UPDATE"),
            {"id": str(job_id)},
        )
        .mappings()
        .fetchone()
    )
    if row is None:
        return
    attempts = int(row["attempts"]) + 1
    max_attempts = int(row["max_attempts"])

    if permanent or attempts >= max_attempts:
        session.execute(
            text(
                """
                UPDATE bg_jobs
                SET status = :status,
                    attempts = :attempts,
                    last_error = :error,
                    locked_at = NULL,
                    locked_by = NULL
                WHERE id = :id
                """
            ),
            {
                "id": str(job_id),
                "status": JobStatus.failed.value,
                "attempts": attempts,
                "error": error,
            },
        )
        log_event(
            logger,
            "job.dead_lettered",
            level=logging.ERROR,
            job_id=str(job_id),
            job_type=job_type.value,
            attempts=attempts,
            permanent=permanent,
            error=error,
        )
        return

    delay = backoff_seconds(config=config, attempts=attempts)
    session.execute(
        text(
            """
            UPDATE bg_jobs
            SET status = :status,
                attempts = :attempts,
                last_error = :error,
                locked_at = NULL,
                locked_by = NULL,
                run_at = now() + (:backoff_seconds || ' seconds')::interval
            WHERE id = :id
            """
        ),
        {
            "id": str(job_id),
            "status": JobStatus.queued.value,
            "attempts": attempts,
            "error": error,
            "backoff_seconds": str(delay),
        },
    )
    log_event(
        logger,
        "job.retry_scheduled",
        level=logging.WARNING,
        job_id=str(job_id),
        job_type=job_type.value,
        attempts=attempts,
        backoff_seconds=delay,
        error=error,
    )


def _schedule_follow_up_jobs(*, session: Session, config: WorkerConfig, job_type: JobType) -> None:
    if job_type not in PERIODIC_JOB_TYPES:
        return

    interval = {
        JobType.sweep_pending: config.sweep_interval_seconds,
        JobType.alert_check: config.alert_check_interval_seconds,
        JobType.reconcile_contacts: config.reconcile_interval_seconds,
    }[job_type]
    run_at = datetime.now(UTC) + timedelta(seconds=max(1.0, interval))
    # No-op while a retry of the same periodic job is still queued.
    enqueue_job(
        session=session,
        job_type=job_type,
        event_id=None,
        payload={"reason": "poll_loop"},
        dedupe_key=job_type.value,
        run_at=run_at,
    )
