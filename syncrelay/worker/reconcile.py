from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.logs import log_event
from syncrelay.models.enums import EntityType, EventSource, EventStatus
from syncrelay.services.events import EventView
from syncrelay.sync.context import SyncContext
from syncrelay.sync.contacts import sync_crm_contact
from syncrelay.worker.runtime import WorkerRuntime

logger = logging.getLogger("syncrelay.worker")


@dataclass(frozen=True)
class ReconcileResult:
    drift: int
    repaired: int
    errors: int
    total: int


def reconcile_contacts(*, session: Session, runtime: WorkerRuntime, limit: int | None = None) -> ReconcileResult:
    """Re-push linked CRM contacts to telephony, least recently synced first.

    A mapping whose CRM contact no longer exists counts as drift and is left alone.
    """
    if limit is None:
        limit = runtime.settings.RECONCILE_BATCH_SIZE
    crm_contact_ids = [
        row[0]
        for row in session.execute(
            text(
                """
                SELECT crm_contact_id
                FROM identity_mappings
                ORDER BY last_synced_at ASC
                LIMIT :limit
                """
            ),
            {"limit": max(1, limit)},
        ).fetchall()
    ]
    session.commit()

    run_id = uuid4()
    drift = repaired = errors = 0
    for crm_contact_id in crm_contact_ids:
        try:
            if runtime.clients.crm.read("contact", crm_contact_id) is None:
                drift += 1
                log_event(logger, "reconcile.drift", run_id=str(run_id), crm_contact_id=crm_contact_id)
                continue
            sync_crm_contact(
                SyncContext(
                    session=session,
                    settings=runtime.settings,
                    clients=runtime.clients,
                    event=_reconcile_event(run_id, crm_contact_id),
                )
            )
            session.commit()
            repaired += 1
        except Exception as e:
            # sync_crm_contact has already committed its error row.
            session.rollback()
            errors += 1
            log_event(
                logger,
                "reconcile.contact_failed",
                level=logging.WARNING,
                run_id=str(run_id),
                crm_contact_id=crm_contact_id,
                error=str(e),
            )

    result = ReconcileResult(drift=drift, repaired=repaired, errors=errors, total=len(crm_contact_ids))
    log_event(
        logger,
        "reconcile.completed",
        run_id=str(run_id),
        drift=result.drift,
        repaired=result.repaired,
        errors=result.errors,
        total=result.total,
    )
    return result


def _reconcile_event(run_id: UUID, crm_contact_id: str) -> EventView:
    return EventView(
        id=run_id,
        source=EventSource.crm,
        event_type="contact.reconcile",
        entity_type=EntityType.contact,
        entity_id=crm_contact_id,
        direction=None,
        payload={},
        status=EventStatus.processing,
        received_at=datetime.now(UTC),
    )
