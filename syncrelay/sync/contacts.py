from __future__ import annotations

import logging

from syncrelay.core.errors import IdentityConflict
from syncrelay.core.logs import log_event
from syncrelay.models.enums import OptoutStatus, SyncDirection
from syncrelay.services.conflicts import (
    ContactRecord,
    contact_from_payload,
    contact_to_payload,
    merge_contacts,
)
from syncrelay.services.identity import ensure_unlinked, find_mapping, resolve_crm_identity, upsert_mapping
from syncrelay.services.sync_log import sync_attempt
from syncrelay.sync.context import SyncContext
from syncrelay.sync.messages import handle_optout_signal

logger = logging.getLogger("syncrelay.worker")

DISPOSED_TAG = "Contact Disposed"

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off", ""})


def _as_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    lowered = str(value).strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    return default


def sync_crm_contact(ctx: SyncContext) -> None:
    event = ctx.event
    crm_contact_id = event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.crm_to_telephony.value,
        entity_type="contact",
        entity_id=crm_contact_id,
        source_id=crm_contact_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        if "deleted" in event.event_type.lower():
            attempt.skip("contact deletions are not propagated")
            return

        crm_payload = ctx.clients.crm.read("contact", crm_contact_id)
        if crm_payload is None:
            attempt.skip("contact no longer exists in CRM")
            return
        crm_record = contact_from_payload("crm", {**crm_payload, "id": crm_contact_id})

        telephony_record = _current_telephony_record(ctx, crm_contact_id, crm_record)
        if telephony_record is not None and telephony_record.id:
            # A shared phone or email can surface a telephony contact owned by another CRM contact.
            try:
                ensure_unlinked(ctx.session, telephony_contact_id=telephony_record.id, crm_contact_id=crm_contact_id)
            except IdentityConflict as exc:
                attempt.skip(str(exc))
                return

        merged = crm_record
        if telephony_record is not None:
            if ctx.settings.CONTACT_SOURCE_OF_TRUTH == "telephony":
                result = merge_contacts(telephony_record, crm_record)
            else:
                result = merge_contacts(crm_record, telephony_record)
            merged = result.merged
            for decision in result.conflicts:
                log_event(
                    logger,
                    "sync.conflict_resolved",
                    crm_contact_id=crm_contact_id,
                    field=decision.field,
                    chosen_source=decision.chosen_source,
                    reason=decision.reason,
                    correlation_id=ctx.correlation_id,
                )

        telephony_id = telephony_record.id if telephony_record is not None else None
        saved = ctx.clients.telephony.upsert("contact", contact_to_payload(merged, record_id=telephony_id))
        telephony_id = str(saved.get("id") or telephony_id or "")
        if not telephony_id:
            raise RuntimeError("telephony contact upsert returned no id")

        # Write back only when the merge changed the CRM record.
        if ctx.settings.CONTACT_SOURCE_OF_TRUTH == "merge" and _differs(merged, crm_record):
            ctx.clients.crm.upsert("contact", contact_to_payload(merged, record_id=crm_contact_id))

        upsert_mapping(
            ctx.session,
            crm_contact_id=crm_contact_id,
            telephony_contact_id=telephony_id,
            phone=merged.phone,
            email=merged.email,
            sync_direction=SyncDirection.crm_to_telephony,
        )
        attempt.target_id = telephony_id


def sync_telephony_contact(ctx: SyncContext) -> None:
    event = ctx.event
    telephony_contact_id = event.entity_id or ""
    lowered = event.event_type.lower()
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.telephony_to_crm.value,
        entity_type="contact",
        entity_id=telephony_contact_id,
        source_id=telephony_contact_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        record = contact_from_payload("telephony", ctx.payload)

        if "dnc" in lowered:
            if not record.phone:
                attempt.skip("DNC event without phone number")
                return
            raw = ctx.payload.get("dnc", ctx.payload.get("is_blocked"))
            status = OptoutStatus.opted_out if _as_bool(raw, default=True) else OptoutStatus.opted_in
            handle_optout_signal(
                ctx,
                attempt,
                phone=record.phone,
                source="telephony",
                reason="telephony DNC update",
                status=status,
                telephony_contact_id=telephony_contact_id or None,
                create_payload=contact_to_payload(record),
            )
            return

        if "disposed" in lowered:
            disposition = ctx.payload.get("disposition") or ctx.payload.get("disposition_status")
            link = resolve_crm_identity(
                ctx, telephony_contact_id=telephony_contact_id, phone=record.phone, email=record.email
            )
            if link is None:
                attempt.skip("no CRM contact mapped")
                return
            tags = [DISPOSED_TAG]
            if disposition:
                tags.insert(0, f"Disposition: {disposition}")
            ctx.clients.crm.add_tags(link.crm_contact_id, tags)
            attempt.target_id = link.crm_contact_id
            return

        attempt.skip("CRM is the contact source of truth")


def _current_telephony_record(
    ctx: SyncContext, crm_contact_id: str, crm_record: ContactRecord
) -> ContactRecord | None:
    link = find_mapping(ctx.session, crm_contact_id=crm_contact_id)
    if link is not None and link.telephony_contact_id:
        payload = ctx.clients.telephony.read("contact", link.telephony_contact_id)
        if payload is not None:
            return contact_from_payload("telephony", {**payload, "id": link.telephony_contact_id})

    found = ctx.clients.telephony.search("contact", phone=crm_record.phone, email=crm_record.email)
    if found is None:
        return None
    return contact_from_payload("telephony", found)


def _differs(merged: ContactRecord, original: ContactRecord) -> bool:
    return contact_to_payload(merged) != contact_to_payload(original)
