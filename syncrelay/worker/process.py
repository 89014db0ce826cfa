from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from syncrelay.core.logs import log_event
from syncrelay.core.metrics import observe_event_processed
from syncrelay.services.events import (
    claim_event,
    is_quarantined,
    mark_event_done,
    mark_event_error,
)
from syncrelay.sync.context import SyncContext
from syncrelay.sync.router import route_event
from syncrelay.worker.runtime import WorkerRuntime

logger = logging.getLogger("syncrelay.worker")

NOT_CLAIMED = "not_claimed"
QUARANTINED = "quarantined"
DONE = "done"


def process_event(
    *,
    session: Session,
    event_id: UUID,
    runtime: WorkerRuntime,
    allow_retry: bool = False,
) -> str:
    """Claim, route and finalize one webhook event.

    Returns the outcome; raises whatever the synchronizer raised after the
    event has been marked `error`.
    """
    event = claim_event(session, event_id=event_id, allow_retry=allow_retry)
    session.commit()
    if event is None:
        log_event(logger, "event.not_claimed", level=logging.DEBUG, event_id=str(event_id))
        return NOT_CLAIMED

    if is_quarantined(session, event_id=event.id, source=event.source):
        mark_event_done(session, event_id=event.id, note=QUARANTINED)
        session.commit()
        observe_event_processed(source=event.source.value, status=QUARANTINED)
        log_event(logger, "event.skipped_quarantined", event_id=str(event.id), source=event.source.value)
        return QUARANTINED

    ctx = SyncContext(session=session, settings=runtime.settings, clients=runtime.clients, event=event)
    try:
        route_event(ctx, runtime.dispatch_table)
    except Exception as e:
        session.rollback()
        mark_event_error(session, event_id=event.id, error=str(e) or e.__class__.__name__)
        session.commit()
        observe_event_processed(source=event.source.value, status="error")
        log_event(
            logger,
            "event.failed",
            level=logging.ERROR,
            event_id=str(event.id),
            source=event.source.value,
            entity_type=event.entity_type.value,
            error=str(e),
        )
        raise

    mark_event_done(session, event_id=event.id)
    session.commit()
    observe_event_processed(source=event.source.value, status=DONE)
    log_event(
        logger,
        "event.processed",
        event_id=str(event.id),
        source=event.source.value,
        entity_type=event.entity_type.value,
    )
    return DONE
