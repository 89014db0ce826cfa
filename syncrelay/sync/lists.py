from __future__ import annotations

from syncrelay.core.errors import IdentityConflict
from syncrelay.models.enums import SyncDirection
from syncrelay.services.identity import resolve_telephony_identity
from syncrelay.services.sync_log import sync_attempt
from syncrelay.sync.context import SyncContext
from syncrelay.sync.origin import tag_from_payload


def sync_crm_tag(ctx: SyncContext) -> None:
    """A CRM tag applied to a contact adds it to the telephony list of the same name."""
    payload = ctx.payload
    crm_contact_id = str(payload.get("contactId") or payload.get("contact_id") or ctx.event.entity_id or "")
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.crm_to_telephony.value,
        entity_type="tag",
        entity_id=crm_contact_id,
        source_id=crm_contact_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        if "remove" in ctx.event.event_type.lower() or "delete" in ctx.event.event_type.lower():
            attempt.skip("tag removals are not propagated")
            return
        tag = tag_from_payload(payload)
        if tag is None:
            attempt.skip("tag event without tag name")
            return

        try:
            link = resolve_telephony_identity(
                ctx,
                crm_contact_id=crm_contact_id,
                phone=payload.get("phone"),
                email=payload.get("email"),
            )
        except IdentityConflict as exc:
            attempt.skip(str(exc))
            return
        if link is None or not link.telephony_contact_id:
            attempt.skip("contact not present in telephony")
            return

        ctx.clients.telephony.add_to_list(tag, link.telephony_contact_id)
        attempt.target_id = link.telephony_contact_id
