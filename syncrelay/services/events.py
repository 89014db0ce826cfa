from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.logs import log_event
from syncrelay.models.enums import EntityType, EventSource, EventStatus
from syncrelay.worker.queue import enqueue_event_processing

logger = logging.getLogger("syncrelay.worker")

_EVENT_COLUMNS = "id, source, event_type, entity_type, entity_id, direction, payload, status, received_at"


@dataclass(frozen=True)
class EventView:
    id: UUID
    source: EventSource
    event_type: str
    entity_type: EntityType
    entity_id: str | None
    direction: str | None
    payload: dict[str, Any]
    status: EventStatus
    received_at: datetime


def _to_view(row: Any) -> EventView:
    try:
        entity_type = EntityType(str(row["entity_type"]))
    except ValueError:
        entity_type = EntityType.unknown
    return EventView(
        id=UUID(str(row["id"])),
        source=EventSource(str(row["source"])),
        event_type=str(row["event_type"]),
        entity_type=entity_type,
        entity_id=row["entity_id"],
        direction=row["direction"],
        payload=row["payload"] or {},
        status=EventStatus(str(row["status"])),
        received_at=row["received_at"],
    )


def claim_event(session: Session, *, event_id: UUID, allow_retry: bool = False) -> EventView | None:
    """Atomically move pending -> processing. Returns None if another worker owns it.

    `allow_retry` lets a queue retry re-claim an event its previous attempt left in `error`.
    """
    row = (
        session.execute(
            text(
                f"""
                UPDATE webhook_events
                SET status = 'processing',
                    error_message = NULL
                WHERE id = :id
                  AND (status = 'pending' OR (:allow_retry AND status = 'error'))
                RETURNING {_EVENT_COLUMNS}
                """
            ),
            {"id": str(event_id), "allow_retry": allow_retry},
        )
        .mappings()
        .fetchone()
    )
    if row is None:
        return None
    return _to_view(row)


def get_event(session: Session, *, event_id: UUID) -> EventView | None:
    row = (
        session.execute(
            text(f"SELECT {_EVENT_COLUMNS} FROM webhook_events WHERE id = :id"),
            {"id": str(event_id)},
        )
        .mappings()
        .fetchone()
    )
    return _to_view(row) if row is not None else None


def mark_event_done(session: Session, *, event_id: UUID, note: str | None = None) -> None:
    session.execute(
        text(
            """
            UPDATE webhook_events
            SET status = 'done',
                error_message = :note,
                processed_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(event_id), "note": note},
    )


def mark_event_error(session: Session, *, event_id: UUID, error: str) -> None:
    session.execute(
        text(
            """
            UPDATE webhook_events
            SET status = 'error',
                error_message = :error,
                processed_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(event_id), "error": error[:2000]},
    )


def is_quarantined(session: Session, *, event_id: UUID, source: EventSource) -> bool:
    row = session.execute(
        text(
            """
            SELECT 1 FROM quarantine_entries
            WHERE event_id = :event_id AND event_source = :source
            """
        ),
        {"event_id": str(event_id), "source": source.value},
    ).fetchone()
    return row is not None


def quarantine_event(
    session: Session,
    *,
    event_id: UUID,
    source: EventSource,
    reason: str,
    quarantined_by: str | None = None,
) -> bool:
    row = session.execute(
        text(
            """
            INSERT INTO quarantine_entries (event_id, event_source, reason, quarantined_by)
            VALUES (:event_id, :source, :reason, :quarantined_by)
            ON CONFLICT (event_id, event_source) DO NOTHING
            RETURNING id
            """
        ),
        {"event_id": str(event_id), "source": source.value, "reason": reason, "quarantined_by": quarantined_by},
    ).fetchone()
    log_event(logger, "event.quarantined", event_id=str(event_id), source=source.value, reason=reason)
    return row is not None


def release_quarantine(session: Session, *, event_id: UUID, source: EventSource) -> bool:
    res = session.execute(
        text("DELETE FROM quarantine_entries WHERE event_id = :event_id AND event_source = :source"),
        {"event_id": str(event_id), "source": source.value},
    )
    return (res.rowcount or 0) > 0


def replay_event(session: Session, *, event_id: UUID) -> UUID | None:
    """Reset an errored or finished event to pending and enqueue it again.

    Returns None when the event is not in a replayable state.
    """
    row = session.execute(
        text(
            """
            UPDATE webhook_events
            SET status = 'pending',
                error_message = NULL,
                processed_at = NULL
            WHERE id = :id
              AND status IN ('error', 'done')
            RETURNING id
            """
        ),
        {"id": str(event_id)},
    ).fetchone()
    if row is None:
        return None
    job_id = enqueue_event_processing(session=session, event_id=event_id)
    log_event(logger, "event.replayed", event_id=str(event_id), job_id=str(job_id) if job_id else None)
    return job_id
