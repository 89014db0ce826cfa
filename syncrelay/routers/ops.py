from __future__ import annotations

from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncrelay.core.config import get_settings
from syncrelay.core.deps import require_admin
from syncrelay.core.http import get_http_client
from syncrelay.db.session import get_session
from syncrelay.models.enums import EventSource, EventStatus
from syncrelay.schemas.ops import (
    AlertCheckResponse,
    AlertItem,
    DlqJobsResponse,
    DlqReplayResponse,
    EventReplayResponse,
    OpsEventItem,
    OpsEventsResponse,
    OpsMetricsOverviewResponse,
    QuarantineRequest,
    QuarantineResponse,
)
from syncrelay.services.alerting import run_alert_check
from syncrelay.services.events import get_event, quarantine_event, release_quarantine, replay_event
from syncrelay.services.ops_dashboard import get_metrics_overview, list_events

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_admin)])


@router.get("/events", response_model=OpsEventsResponse)
def ops_events_list(
    event_status: EventStatus | None = Query(default=None, alias="status"),
    source: EventSource | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
) -> OpsEventsResponse:
    rows = list_events(session=session, status=event_status, source=source, limit=limit)
    return OpsEventsResponse(
        items=[
            OpsEventItem(
                id=row.id,
                source=row.source,
                event_type=row.event_type,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                status=row.status,
                error_message=row.error_message,
                received_at=row.received_at,
                processed_at=row.processed_at,
                quarantined=row.quarantined,
            )
            for row in rows
        ]
    )


@router.post("/events/{event_id}/replay", response_model=EventReplayResponse)
def ops_event_replay(
    event_id: UUID,
    session: Session = Depends(get_session),
) -> EventReplayResponse:
    event = get_event(session, event_id=event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    if event.status not in {EventStatus.error, EventStatus.done}:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Event in status {event.status.value} cannot be replayed",
        )

    job_id = replay_event(session, event_id=event_id)
    session.commit()
    return EventReplayResponse(status="pending", event_id=event_id, job_id=job_id)


@router.post("/events/{event_id}/quarantine", response_model=QuarantineResponse)
def ops_event_quarantine(
    event_id: UUID,
    payload: QuarantineRequest,
    operator: str = Depends(require_admin),
    session: Session = Depends(get_session),
) -> QuarantineResponse:
    event = get_event(session, event_id=event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")

    created = quarantine_event(
        session,
        event_id=event_id,
        source=event.source,
        reason=payload.reason,
        quarantined_by=operator,
    )
    session.commit()
    return QuarantineResponse(status="quarantined" if created else "already_quarantined", event_id=event_id)


@router.delete("/events/{event_id}/quarantine", response_model=QuarantineResponse)
def ops_event_release(
    event_id: UUID,
    session: Session = Depends(get_session),
) -> QuarantineResponse:
    event = get_event(session, event_id=event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    if not release_quarantine(session, event_id=event_id, source=event.source):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event is not quarantined")
    session.commit()
    return QuarantineResponse(status="released", event_id=event_id)


@router.get("/jobs/dlq", response_model=DlqJobsResponse)
def dlq_jobs_list(
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
) -> DlqJobsResponse:
    rows = (
        session.execute(
            text(
                """
            SELECT
              id,
              event_id,
              type,
              status,
              attempts,
              max_attempts,
              last_error,
              run_at,
              updated_at,
              payload
            FROM bg_jobs
            WHERE status = 'failed'
            ORDER BY updated_at DESC, id DESC
            LIMIT :limit
            """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    return DlqJobsResponse(
        items=[
            {
                "id": row["id"],
                "event_id": row["event_id"],
                "type": row["type"],
                "status": row["status"],
                "attempts": row["attempts"],
                "max_attempts": row["max_attempts"],
                "last_error": row["last_error"],
                "run_at": row["run_at"],
                "updated_at": row["updated_at"],
                "payload": row["payload"] or {},
            }
            for row in rows
        ]
    )


@router.post("/jobs/{job_id}/replay", response_model=DlqReplayResponse)
def dlq_job_replay(
    job_id: UUID,
    session: Session = Depends(get_session),
) -> DlqReplayResponse:
    row = (
        session.execute(
            text(
                """
            SELECT id, event_id
            FROM bg_jobs
            WHERE id = :id
              AND status = 'failed'
            FOR UPDATE
            """
            ),
            {"id": str(job_id)},
        )
        .mappings()
        .first()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ job not found")

    if row["event_id"] is not None:
        # Dead-lettered events are left in `error`.
        session.execute(
            text(
                """
                UPDATE webhook_events
                SET status = 'pending',
                    error_message = NULL,
                    processed_at = NULL
                WHERE id = :id
                  AND status = 'error'
                """
            ),
            {"id": str(row["event_id"])},
        )

    try:
        session.execute(
            text(
                """
                UPDATE bg_jobs
                SET status = 'queued',
                    attempts = 0,
                    run_at = now(),
                    locked_at = NULL,
                    locked_by = NULL,
                    last_error = NULL
                WHERE id = :id
                """
            ),
            {"id": str(job_id)},
        )
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="An active job for this work already exists"
        ) from e
    return DlqReplayResponse(status="queued", job_id=job_id)


@router.get("/metrics/overview", response_model=OpsMetricsOverviewResponse)
def ops_metrics_overview(
    session: Session = Depends(get_session),
) -> OpsMetricsOverviewResponse:
    metrics = get_metrics_overview(session=session)
    return OpsMetricsOverviewResponse(
        events_by_status=metrics.events_by_status,
        queued_jobs=metrics.queued_jobs,
        running_jobs=metrics.running_jobs,
        failed_jobs_24h=metrics.failed_jobs_24h,
        sync_errors_24h=metrics.sync_errors_24h,
        quarantined_events=metrics.quarantined_events,
        opted_out_numbers=metrics.opted_out_numbers,
        oldest_pending_age_seconds=metrics.oldest_pending_age_seconds,
    )


@router.post("/alerts/check", response_model=AlertCheckResponse)
def ops_alerts_check(
    session: Session = Depends(get_session),
    http: httpx.Client = Depends(get_http_client),
) -> AlertCheckResponse:
    alerts = run_alert_check(session=session, settings=get_settings(), client=http)
    return AlertCheckResponse(
        alerts=[
            AlertItem(
                level=a.level.value,
                metric=a.metric,
                title=a.title,
                message=a.message,
                metadata=a.metadata,
            )
            for a in alerts
        ]
    )
