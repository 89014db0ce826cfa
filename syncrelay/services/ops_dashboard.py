from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.models.enums import EventSource, EventStatus


@dataclass(frozen=True)
class OpsEventView:
    id: UUID
    source: str
    event_type: str
    entity_type: str
    entity_id: str | None
    status: str
    error_message: str | None
    received_at: datetime
    processed_at: datetime | None
    quarantined: bool


@dataclass(frozen=True)
class OpsMetricsOverviewView:
    events_by_status: dict[str, int]
    queued_jobs: int
    running_jobs: int
    failed_jobs_24h: int
    sync_errors_24h: int
    quarantined_events: int
    opted_out_numbers: int
    oldest_pending_age_seconds: int | None


def list_events(
    *,
    session: Session,
    status: EventStatus | None,
    source: EventSource | None,
    limit: int,
) -> list[OpsEventView]:
    rows = (
        session.execute(
            text(
                """
                SELECT
                  e.id,
                  e.source,
                  e.event_type,
                  e.entity_type,
                  e.entity_id,
                  e.status,
                  e.error_message,
                  e.received_at,
                  e.processed_at,
                  (q.id IS NOT NULL) AS quarantined
                FROM webhook_events e
                LEFT JOIN quarantine_entries q
                  ON q.event_id = e.id AND q.event_source = e.source
                WHERE (CAST(:status AS text) IS NULL OR e.status::text = :status)
                  AND (CAST(:source AS text) IS NULL OR e.source::text = :source)
                ORDER BY e.received_at DESC, e.id DESC
                LIMIT :limit
                """
            ),
            {
                "status": status.value if status else None,
                "source": source.value if source else None,
                "limit": limit,
            },
        )
        .mappings()
        .all()
    )
    return [
        OpsEventView(
            id=UUID(str(row["id"])),
            source=str(row["source"]),
            event_type=row["event_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            status=str(row["status"]),
            error_message=row["error_message"],
            received_at=row["received_at"],
            processed_at=row["processed_at"],
            quarantined=bool(row["quarantined"]),
        )
        for row in rows
    ]


def get_metrics_overview(*, session: Session) -> OpsMetricsOverviewView:
    event_rows = (
        session.execute(text("SELECT status, COUNT(*) AS c FROM webhook_events GROUP BY status"))
        .mappings()
        .all()
    )
    events_by_status = {str(row["status"]): int(row["c"]) for row in event_rows}

    job_rows = (
        session.execute(
            text(
                """
                SELECT
                  COUNT(*) FILTER (WHERE status = 'queued') AS queued,
                  COUNT(*) FILTER (WHERE status = 'running') AS running,
                  COUNT(*) FILTER (
                    WHERE status = 'failed'
                      AND updated_at >= now() - interval '24 hours'
                  ) AS failed_24h
                FROM bg_jobs
                """
            )
        )
        .mappings()
        .one()
    )

    misc_row = (
        session.execute(
            text(
                """
                SELECT
                  (SELECT COUNT(*) FROM sync_log
                    WHERE status = 'error' AND started_at >= now() - interval '24 hours') AS sync_errors_24h,
                  (SELECT COUNT(*) FROM quarantine_entries) AS quarantined_events,
                  (SELECT COUNT(*) FROM optout_registry WHERE status = 'opted_out') AS opted_out_numbers,
                  (SELECT EXTRACT(EPOCH FROM (now() - MIN(received_at)))
                    FROM webhook_events WHERE status = 'pending') AS oldest_pending_age_seconds
                """
            )
        )
        .mappings()
        .one()
    )

    oldest_pending = misc_row["oldest_pending_age_seconds"]
    return OpsMetricsOverviewView(
        events_by_status=events_by_status,
        queued_jobs=int(job_rows["queued"]),
        running_jobs=int(job_rows["running"]),
        failed_jobs_24h=int(job_rows["failed_24h"]),
        sync_errors_24h=int(misc_row["sync_errors_24h"]),
        quarantined_events=int(misc_row["quarantined_events"]),
        opted_out_numbers=int(misc_row["opted_out_numbers"]),
        oldest_pending_age_seconds=max(0, int(oldest_pending)) if oldest_pending is not None else None,
    )
