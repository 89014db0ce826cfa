from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.logs import log_event
from syncrelay.worker.process import process_event
from syncrelay.worker.runtime import WorkerRuntime

logger = logging.getLogger("syncrelay.worker")


@dataclass(frozen=True)
class SweepResult:
    reset_processing: int
    requeued_jobs: int
    attempted: int
    failed: int


def sweep_pending(
    *,
    session: Session,
    runtime: WorkerRuntime,
    older_than_seconds: float | None = None,
    limit: int | None = None,
) -> SweepResult:
    """Recover events the queue lost track of and process them inline."""
    settings = runtime.settings
    if older_than_seconds is None:
        older_than_seconds = settings.SWEEP_PENDING_OLDER_THAN_SECONDS
    if limit is None:
        limit = settings.SWEEP_BATCH_LIMIT

    reset_processing = _reset_stale_processing(session, stale_seconds=settings.SWEEP_STALE_PROCESSING_SECONDS)
    requeued_jobs = _requeue_stale_jobs(session, stale_seconds=settings.SWEEP_STALE_PROCESSING_SECONDS)
    session.commit()

    rows = session.execute(
        text(
            """
            SELECT id
            FROM webhook_events
            WHERE status = 'pending'
              AND received_at <= now() - (:older_than || ' seconds')::interval
            ORDER BY received_at ASC
            LIMIT :limit
            """
        ),
        {"older_than": str(max(0.0, older_than_seconds)), "limit": max(1, limit)},
    ).fetchall()
    session.commit()

    failed = 0
    for row in rows:
        try:
            process_event(session=session, event_id=UUID(str(row[0])), runtime=runtime)
        except Exception as e:
            # process_event has already recorded the error on the event row.
            failed += 1
            log_event(logger, "sweep.event_failed", level=logging.WARNING, event_id=str(row[0]), error=str(e))

    result = SweepResult(
        reset_processing=reset_processing,
        requeued_jobs=requeued_jobs,
        attempted=len(rows),
        failed=failed,
    )
    log_event(
        logger,
        "sweep.completed",
        reset_processing=result.reset_processing,
        requeued_jobs=result.requeued_jobs,
        attempted=result.attempted,
        failed=result.failed,
    )
    return result


def _reset_stale_processing(session: Session, *, stale_seconds: float) -> int:
    res = session.execute(
        text(
            """
            UPDATE webhook_events
            SET status = 'pending'
            WHERE status = 'processing'
              AND updated_at <= now() - (:stale || ' seconds')::interval
            """
        ),
        {"stale": str(max(0.0, stale_seconds))},
    )
    return int(res.rowcount or 0)


def _requeue_stale_jobs(session: Session, *, stale_seconds: float) -> int:
    res = session.execute(
        text(
            """
            UPDATE bg_jobs
            SET status = 'queued',
                locked_at = NULL,
                locked_by = NULL,
                run_at = now()
            WHERE status = 'running'
              AND locked_at <= now() - (:stale || ' seconds')::interval
            """
        ),
        {"stale": str(max(0.0, stale_seconds))},
    )
    return int(res.rowcount or 0)
