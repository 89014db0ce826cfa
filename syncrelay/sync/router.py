from __future__ import annotations

from collections.abc import Callable, Mapping
from itertools import product

from syncrelay.models.enums import EntityType, EventSource, SyncDirection
from syncrelay.services.sync_log import sync_attempt
from syncrelay.sync.broadcasts import sync_broadcast
from syncrelay.sync.calls import sync_telephony_call, sync_telephony_communication, sync_telephony_note
from syncrelay.sync.contacts import sync_crm_contact, sync_telephony_contact
from syncrelay.sync.context import SyncContext
from syncrelay.sync.lists import sync_crm_tag
from syncrelay.sync.messages import (
    send_crm_outbound_message,
    sync_messaging_message,
    sync_messaging_optout,
)
from syncrelay.sync.origin import is_relay_originated

Handler = Callable[[SyncContext], None]
DispatchTable = Mapping[tuple[EventSource, EntityType], Handler]

_DEFAULT_DIRECTIONS = {
    EventSource.crm: SyncDirection.crm_to_telephony,
    EventSource.telephony: SyncDirection.telephony_to_crm,
    EventSource.messaging: SyncDirection.messaging_to_crm,
    EventSource.broadcast: SyncDirection.broadcast_to_crm,
}


def skip_event(ctx: SyncContext, reason: str) -> None:
    event = ctx.event
    entity_id = event.entity_id or str(event.id)
    with sync_attempt(
        ctx.session,
        direction=_DEFAULT_DIRECTIONS[event.source].value,
        entity_type=event.entity_type.value,
        entity_id=entity_id,
        source_id=entity_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        attempt.skip(reason)


def unhandled(ctx: SyncContext) -> None:
    skip_event(ctx, f"no synchronizer for {ctx.event.source.value}/{ctx.event.entity_type.value}")


def _skip_because(reason: str) -> Handler:
    def handler(ctx: SyncContext) -> None:
        skip_event(ctx, reason)

    handler.__name__ = "skip"
    return handler


HANDLERS: dict[tuple[EventSource, EntityType], Handler] = {
    (EventSource.crm, EntityType.contact): sync_crm_contact,
    (EventSource.crm, EntityType.tag): sync_crm_tag,
    (EventSource.crm, EntityType.message): send_crm_outbound_message,
    (EventSource.telephony, EntityType.contact): sync_telephony_contact,
    (EventSource.telephony, EntityType.call): sync_telephony_call,
    (EventSource.telephony, EntityType.transcription): sync_telephony_note,
    (EventSource.telephony, EntityType.call_summary): sync_telephony_note,
    (EventSource.telephony, EntityType.recording): sync_telephony_note,
    (EventSource.telephony, EntityType.voicemail): sync_telephony_note,
    (EventSource.telephony, EntityType.communication): sync_telephony_communication,
    (EventSource.telephony, EntityType.appointment): _skip_because("CRM is the appointment source of truth"),
    (EventSource.messaging, EntityType.message): sync_messaging_message,
    (EventSource.messaging, EntityType.optout): sync_messaging_optout,
    (EventSource.broadcast, EntityType.broadcast): sync_broadcast,
}


def build_dispatch_table(handlers: Mapping[tuple[EventSource, EntityType], Handler] | None = None) -> DispatchTable:
    table: dict[tuple[EventSource, EntityType], Handler] = {
        pair: unhandled for pair in product(EventSource, EntityType)
    }
    table.update(HANDLERS if handlers is None else handlers)
    validate_dispatch_table(table)
    return table


def validate_dispatch_table(table: DispatchTable) -> None:
    missing = [
        f"{source.value}/{entity_type.value}"
        for source, entity_type in product(EventSource, EntityType)
        if not callable(table.get((source, entity_type)))
    ]
    if missing:
        raise ValueError(f"dispatch table missing handlers for: {', '.join(missing)}")


def route_event(ctx: SyncContext, table: DispatchTable) -> None:
    event = ctx.event
    if is_relay_originated(event.entity_type, event.payload):
        skip_event(ctx, "middleware-originated")
        return
    table[(event.source, event.entity_type)](ctx)
