from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import orjson
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from syncrelay.core.config import Settings
from syncrelay.core.logs import log_event
from syncrelay.models.enums import EntityType, EventSource, EventStatus
from syncrelay.services.ingest.canonicalize import canonicalize
from syncrelay.services.ingest.fingerprint import compute_fingerprint
from syncrelay.services.ingest.types import CanonicalEvent
from syncrelay.worker.queue import enqueue_event_processing

logger = logging.getLogger("syncrelay.api")

_CALL_EVENT_PREFIXES = ("InboundPhoneCall-", "OutboundPhoneCall-")


@dataclass(frozen=True)
class IngestResult:
    status: str  # accepted|duplicate|skipped|ping|ignored
    event_id: UUID | None = None
    event_type: str | None = None
    entity_type: EntityType | None = None


def is_allowed_telephony_event(event_type: str, allowed: set[str]) -> bool:
    if not allowed or event_type in allowed:
        return True
    # Call events are configured as one family per direction.
    for prefix in _CALL_EVENT_PREFIXES:
        if event_type.startswith(prefix) and any(a.startswith(prefix) for a in allowed):
            return True
    return False


def ingest_webhook(
    *,
    session: Session,
    settings: Settings,
    source: EventSource,
    body: dict[str, Any],
    received_at: datetime | None = None,
) -> IngestResult:
    received_at = received_at or datetime.now(UTC)
    event = canonicalize(source, body)

    if event.is_ping:
        log_event(logger, "webhook.ping", source=source.value)
        return IngestResult(status="ping")

    if source == EventSource.telephony and not is_allowed_telephony_event(
        event.event_type or "", settings.telephony_allowed_events()
    ):
        log_event(logger, "webhook.ignored", source=source.value, event_type=event.event_type)
        return IngestResult(status="ignored", event_type=event.event_type)

    status = EventStatus.pending if event.entity_id else EventStatus.skipped
    fingerprint = compute_fingerprint(
        event,
        body,
        received_at=received_at,
        bucket_seconds=settings.FINGERPRINT_BUCKET_SECONDS,
    )

    try:
        event_id = _insert_event(
            session=session,
            event=event,
            body=body,
            fingerprint=fingerprint,
            status=status,
            received_at=received_at,
        )
    except IntegrityError:
        # A concurrent delivery won the unique fingerprint race.
        session.rollback()
        event_id = None

    if event_id is None:
        session.rollback()
        log_event(
            logger,
            "webhook.duplicate",
            source=source.value,
            event_type=event.event_type,
            entity_id=event.entity_id,
        )
        return IngestResult(status="duplicate", event_type=event.event_type, entity_type=event.entity_type)

    session.commit()

    if status == EventStatus.skipped:
        log_event(
            logger,
            "webhook.skipped",
            level=logging.WARNING,
            source=source.value,
            event_type=event.event_type,
            event_id=str(event_id),
            reason="entity id not derivable",
        )
        return IngestResult(
            status="skipped", event_id=event_id, event_type=event.event_type, entity_type=event.entity_type
        )

    try:
        enqueue_event_processing(session=session, event_id=event_id)
        session.commit()
    except SQLAlchemyError as e:
        # The sweep recovers pending events that never got a job.
        session.rollback()
        log_event(
            logger,
            "webhook.enqueue_failed",
            level=logging.ERROR,
            source=source.value,
            event_id=str(event_id),
            error=str(e),
        )

    log_event(
        logger,
        "webhook.accepted",
        source=source.value,
        event_type=event.event_type,
        entity_type=event.entity_type.value,
        entity_id=event.entity_id,
        event_id=str(event_id),
    )
    return IngestResult(
        status="accepted", event_id=event_id, event_type=event.event_type, entity_type=event.entity_type
    )


def _insert_event(
    *,
    session: Session,
    event: CanonicalEvent,
    body: dict[str, Any],
    fingerprint: str,
    status: EventStatus,
    received_at: datetime,
) -> UUID | None:
    row = session.execute(
        text(
            """
            INSERT INTO webhook_events (
              source,
              event_type,
              entity_type,
              entity_id,
              direction,
              payload,
              fingerprint,
              status,
              received_at,
              processed_at
            )
            VALUES (
              :source,
              :event_type,
              :entity_type,
              :entity_id,
              :direction,
              CAST(:payload AS jsonb),
              :fingerprint,
              :status,
              :received_at,
              :processed_at
            )
            ON CONFLICT (fingerprint) DO NOTHING
            RETURNING id
            """
        ),
        {
            "source": event.source.value,
            "event_type": event.event_type,
            "entity_type": event.entity_type.value,
            "entity_id": event.entity_id,
            "direction": event.direction.value if event.direction else None,
            "payload": orjson.dumps(body).decode("utf-8"),
            "fingerprint": fingerprint,
            "status": status.value,
            "received_at": received_at,
            "processed_at": received_at if status == EventStatus.skipped else None,
        },
    ).fetchone()
    if row is None:
        return None
    return UUID(str(row[0]))
