from __future__ import annotations

import logging
from typing import Any

from syncrelay.core.errors import IdentityConflict
from syncrelay.core.logs import log_event
from syncrelay.models.enums import MessageDirection, OptoutStatus, SyncDirection
from syncrelay.services.compliance import (
    DNC_SMS_TAGS,
    ensure_can_send,
    is_help_message,
    is_stop_message,
    normalize_phone,
    record_optout,
)
from syncrelay.services.identity import IdentityLink, resolve_crm_identity, resolve_telephony_identity
from syncrelay.services.ingest.canonicalize import normalize_message
from syncrelay.services.sync_log import SyncAttempt, sync_attempt
from syncrelay.sync.context import SyncContext
from syncrelay.sync.origin import ORIGIN_MARKER, with_origin_marker

logger = logging.getLogger("syncrelay.worker")

HELP_TAG = "SMS Help Requested"


def send_message_guarded(
    ctx: SyncContext,
    *,
    to: str,
    text: str,
    metadata: dict[str, Any] | None = None,
) -> str:
    """Send an outbound message only after re-reading the opt-out registry.

    Raises ComplianceViolation before any network call when the recipient opted out.
    """
    recipient = ensure_can_send(ctx.session, to)
    message_id = ctx.clients.messaging.send({"to": recipient, "body": text, **(metadata or {})})
    log_event(logger, "message.sent", to=recipient, message_id=message_id, correlation_id=ctx.correlation_id)
    return message_id


def handle_optout_signal(
    ctx: SyncContext,
    attempt: SyncAttempt,
    *,
    phone: str,
    source: str,
    reason: str,
    status: OptoutStatus = OptoutStatus.opted_out,
    telephony_contact_id: str | None = None,
    create_payload: dict[str, Any] | None = None,
) -> IdentityLink | None:
    """Record an opt-out or opt-in, then mirror it onto the CRM contact.

    Opt-outs create the CRM contact when none exists so the DNC tags always land.
    """
    # The registry commit happens before the CRM is touched.
    normalized = record_optout(ctx.session, phone_number=phone, status=status, source=source, reason=reason)
    opted_out = status == OptoutStatus.opted_out
    link = resolve_crm_identity(
        ctx,
        telephony_contact_id=telephony_contact_id,
        phone=normalized,
        create_payload={**(create_payload or {"source": source}), "phone": normalized} if opted_out else None,
        sync_direction=SyncDirection.messaging_to_crm if source == "messaging" else SyncDirection.telephony_to_crm,
    )
    if link is None:
        attempt.skip("opt-in recorded; no CRM contact mapped")
        return None
    if opted_out:
        ctx.clients.crm.add_tags(link.crm_contact_id, [*DNC_SMS_TAGS, ORIGIN_MARKER])
    attempt.target_id = link.crm_contact_id
    return link


def sync_messaging_message(ctx: SyncContext) -> None:
    event = ctx.event
    message_key = event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.messaging_to_crm.value,
        entity_type="message",
        entity_id=message_key,
        source_id=message_key,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        msg = normalize_message(ctx.payload)
        inbound = msg.direction == MessageDirection.inbound or (
            msg.direction is None and event.event_type.lower().endswith("received")
        )
        contact_phone = normalize_phone(msg.from_number if inbound else msg.to_number)
        if contact_phone is None:
            attempt.skip("message has no contact phone number")
            return

        if inbound and is_stop_message(msg.text):
            handle_optout_signal(
                ctx, attempt, phone=contact_phone, source="messaging", reason=f"inbound keyword: {msg.text.strip()[:40]}"
            )
            return

        link = resolve_crm_identity(
            ctx,
            phone=contact_phone,
            create_payload={"phone": contact_phone, "source": "messaging"},
            sync_direction=SyncDirection.messaging_to_crm,
        )
        if link is None:
            raise RuntimeError("unable to resolve CRM contact for message")

        saved = ctx.clients.crm.upsert(
            "message",
            {
                "contactId": link.crm_contact_id,
                "direction": "inbound" if inbound else "outbound",
                "body": msg.text,
                "externalId": msg.message_id or message_key,
                "conversationId": msg.conversation_id,
                "timestamp": msg.timestamp,
            },
        )
        if inbound and is_help_message(msg.text):
            ctx.clients.crm.add_tags(link.crm_contact_id, [HELP_TAG])
        if ctx.settings.MESSAGING_MIRROR_TO_TELEPHONY:
            _mirror_to_telephony(
                ctx, crm_contact_id=link.crm_contact_id, phone=contact_phone, text=msg.text, inbound=inbound
            )
        attempt.target_id = str(saved.get("id") or link.crm_contact_id)


def _mirror_to_telephony(ctx: SyncContext, *, crm_contact_id: str, phone: str, text: str, inbound: bool) -> None:
    try:
        link = resolve_telephony_identity(ctx, crm_contact_id=crm_contact_id, phone=phone)
    except IdentityConflict as exc:
        log_event(
            logger,
            "message.mirror_skipped",
            level=logging.WARNING,
            reason=str(exc),
            correlation_id=ctx.correlation_id,
        )
        return
    if link is None or not link.telephony_contact_id:
        log_event(logger, "message.mirror_skipped", reason="no telephony contact", correlation_id=ctx.correlation_id)
        return
    label = "SMS received" if inbound else "SMS sent"
    ctx.clients.telephony.add_note(link.telephony_contact_id, with_origin_marker(f"{label}:\n{text}"))


def sync_messaging_optout(ctx: SyncContext) -> None:
    event = ctx.event
    message_key = event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.messaging_to_crm.value,
        entity_type="optout",
        entity_id=message_key,
        source_id=message_key,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        msg = normalize_message(ctx.payload)
        phone = ctx.payload.get("phone") or ctx.payload.get("phoneNumber") or msg.from_number
        if not normalize_phone(phone):
            attempt.skip("opt-out signal without phone number")
            return
        lowered = event.event_type.lower()
        status = OptoutStatus.opted_in if "optin" in lowered or "opt_in" in lowered else OptoutStatus.opted_out
        handle_optout_signal(
            ctx, attempt, phone=str(phone), source="messaging", reason=event.event_type, status=status
        )


def send_crm_outbound_message(ctx: SyncContext) -> None:
    """Outbound message requested from the CRM, delivered through the messaging platform."""
    payload = ctx.payload
    message_key = ctx.event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.crm_to_messaging.value,
        entity_type="message",
        entity_id=message_key,
        source_id=message_key,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        to = payload.get("phone") or payload.get("to") or payload.get("toNumber")
        text = payload.get("message") or payload.get("body") or payload.get("text")
        if not to or not isinstance(text, str) or not text.strip():
            attempt.skip("outbound message missing recipient or body")
            return
        message_id = send_message_guarded(
            ctx,
            to=str(to),
            text=text,
            metadata={"externalId": payload.get("messageId") or message_key},
        )
        attempt.target_id = message_id or None
