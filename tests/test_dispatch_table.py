from __future__ import annotations

from dataclasses import replace
from itertools import product

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from syncrelay.core.config import get_settings
from syncrelay.models.enums import EntityType, EventSource, SyncStatus
from syncrelay.models.sync_log import SyncLogEntry
from syncrelay.services.ingest.ingest import ingest_webhook
from syncrelay.sync.context import SyncContext
from syncrelay.sync.router import HANDLERS, build_dispatch_table, unhandled, validate_dispatch_table
from syncrelay.worker.process import DONE, process_event


def test_table_covers_every_source_and_entity_type() -> None:
    table = build_dispatch_table()
    assert set(table) == set(product(EventSource, EntityType))
    for pair, handler in HANDLERS.items():
        assert table[pair] is handler
    assert table[(EventSource.crm, EntityType.opportunity)] is unhandled


def test_validation_names_missing_pairs() -> None:
    table = dict(build_dispatch_table())
    del table[(EventSource.broadcast, EntityType.broadcast)]
    table[(EventSource.crm, EntityType.call)] = None

    with pytest.raises(ValueError) as exc_info:
        validate_dispatch_table(table)
    assert "broadcast/broadcast" in str(exc_info.value)
    assert "crm/call" in str(exc_info.value)


def test_unhandled_pair_is_recorded_as_skipped(db_session: Session, runtime, fake_clients) -> None:
    result = ingest_webhook(
        session=db_session,
        settings=get_settings(),
        source=EventSource.crm,
        body={"type": "opportunity.created", "id": "o-1"},
    )
    assert process_event(session=db_session, event_id=result.event_id, runtime=runtime) == DONE

    db_session.expire_all()
    row = db_session.execute(select(SyncLogEntry)).scalars().one()
    assert row.status == SyncStatus.skipped
    assert row.error_message == "no synchronizer for crm/opportunity"
    assert fake_clients.crm.calls == []


def test_custom_handlers_override_defaults(db_session: Session, runtime) -> None:
    seen: list[str] = []

    def capture(ctx: SyncContext) -> None:
        seen.append(ctx.event.entity_id or "")

    custom = build_dispatch_table({(EventSource.broadcast, EntityType.broadcast): capture})
    result = ingest_webhook(
        session=db_session,
        settings=get_settings(),
        source=EventSource.broadcast,
        body={"event": "broadcast.completed", "broadcastId": "b-7"},
    )

    outcome = process_event(
        session=db_session,
        event_id=result.event_id,
        runtime=replace(runtime, dispatch_table=custom),
    )
    assert outcome == DONE
    assert seen == ["b-7"]
    # Only the overridden pair changes.
    assert custom[(EventSource.crm, EntityType.contact)] is unhandled
