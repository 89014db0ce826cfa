from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from syncrelay.models.enums import EntityType, MessageDirection, SyncDirection
from syncrelay.services.conflicts import contact_from_payload, contact_to_payload
from syncrelay.services.identity import find_mapping, resolve_crm_identity
from syncrelay.services.sync_log import sync_attempt
from syncrelay.sync.context import SyncContext
from syncrelay.sync.origin import with_origin_marker

_NOTE_LABELS = {
    EntityType.transcription: "Call transcription",
    EntityType.call_summary: "Call summary",
    EntityType.recording: "Call recording",
    EntityType.voicemail: "Voicemail",
}
_NOTE_TEXT_KEYS = {
    EntityType.transcription: ("transcription", "transcript", "text"),
    EntityType.call_summary: ("summary", "ai_summary", "text"),
    EntityType.recording: ("recording_url", "recording", "url"),
    EntityType.voicemail: ("voicemail_url", "voicemail", "transcription", "url"),
}


def _contact_id_of(payload: dict[str, Any]) -> str | None:
    for key in ("contact_id", "contactId"):
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    contact = payload.get("contact")
    if isinstance(contact, dict) and contact.get("id") not in (None, ""):
        return str(contact["id"])
    return None


def call_direction(event_type: str, call: dict[str, Any]) -> MessageDirection | None:
    lowered = event_type.lower()
    if lowered.startswith("inbound"):
        return MessageDirection.inbound
    if lowered.startswith("outbound"):
        return MessageDirection.outbound
    raw = str(call.get("direction") or "").lower()
    if raw in {"inbound", "incoming"}:
        return MessageDirection.inbound
    if raw in {"outbound", "outgoing"}:
        return MessageDirection.outbound
    return None


def format_call_note(call: dict[str, Any], direction: MessageDirection | None) -> str:
    lines = [f"{(direction or 'unknown').capitalize()} call"]
    for label, key in (
        ("Disposition", "disposition"),
        ("Duration (s)", "duration"),
        ("Agent", "agent_name"),
        ("Recording", "recording_url"),
        ("Notes", "notes"),
    ):
        value = call.get(key)
        if value not in (None, ""):
            lines.append(f"{label}: {value}")
    return with_origin_marker("\n".join(lines))


def sync_telephony_call(ctx: SyncContext) -> None:
    call_id = ctx.event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.telephony_to_crm.value,
        entity_type="call",
        entity_id=call_id,
        source_id=call_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        call = ctx.clients.telephony.read("call", call_id) or ctx.payload
        contact_id = _contact_id_of(call) or _contact_id_of(ctx.payload)

        contact_payload: dict[str, Any] | None = None
        if contact_id:
            contact_payload = ctx.clients.telephony.read("contact", contact_id)
        if contact_payload is None and isinstance(call.get("contact"), dict):
            contact_payload = call["contact"]
        record = contact_from_payload("telephony", contact_payload or {})
        phone = record.phone or call.get("lead_number") or call.get("phone_number")
        if not contact_id and not phone and not record.email:
            attempt.skip("call has no contact reference")
            return

        link = resolve_crm_identity(
            ctx,
            telephony_contact_id=contact_id,
            phone=phone,
            email=record.email,
            create_payload=contact_to_payload(replace(record, phone=phone)),
        )
        if link is None:
            raise RuntimeError("unable to resolve CRM contact for call")

        direction = call_direction(ctx.event.event_type, call)
        ctx.clients.crm.add_note(link.crm_contact_id, format_call_note(call, direction))

        tags: list[str] = []
        if direction is not None:
            tags.append("Inbound Call" if direction == MessageDirection.inbound else "Outbound Call")
        if call.get("disposition"):
            tags.append(f"Call: {call['disposition']}")
        ctx.clients.crm.add_tags(link.crm_contact_id, tags)
        attempt.target_id = link.crm_contact_id


def sync_telephony_note(ctx: SyncContext) -> None:
    """Transcriptions, summaries, recordings and voicemails become CRM notes."""
    event = ctx.event
    source_id = event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.telephony_to_crm.value,
        entity_type=event.entity_type.value,
        entity_id=source_id,
        source_id=source_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        contact_id = _contact_id_of(ctx.payload)
        record = contact_from_payload("telephony", ctx.payload.get("contact") or {})
        link = resolve_crm_identity(
            ctx, telephony_contact_id=contact_id, phone=record.phone, email=record.email
        )
        if link is None:
            attempt.skip("no CRM contact mapped")
            return

        text = None
        for key in _NOTE_TEXT_KEYS.get(event.entity_type, ()):
            value = ctx.payload.get(key)
            if isinstance(value, str) and value.strip():
                text = value.strip()
                break
        if text is None:
            attempt.skip("no content to record")
            return

        label = _NOTE_LABELS.get(event.entity_type, "Telephony update")
        ctx.clients.crm.add_note(link.crm_contact_id, with_origin_marker(f"{label}:\n{text}"))
        attempt.target_id = link.crm_contact_id


def format_communication_note(payload: dict[str, Any], disposed: bool) -> str:
    stage = "disposed" if disposed else "initiated"
    timestamp = payload.get("created_at") or payload.get("timestamp") or datetime.now(UTC).isoformat()
    channel = payload.get("channel") or payload.get("type") or "unknown"
    outcome = (payload.get("outcome") or payload.get("status") or "completed") if disposed else "initiated"
    return with_origin_marker(f"Communication {stage} at {timestamp}\nChannel: {channel}\nOutcome: {outcome}")


def sync_telephony_communication(ctx: SyncContext) -> None:
    """Communication attempts and outcomes become lightweight notes on already-linked contacts."""
    communication_id = ctx.event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.telephony_to_crm.value,
        entity_type="communication",
        entity_id=communication_id,
        source_id=communication_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        contact_id = _contact_id_of(ctx.payload)
        if contact_id is None:
            attempt.skip("communication has no contact reference")
            return
        link = find_mapping(ctx.session, telephony_contact_id=contact_id)
        if link is None:
            attempt.skip("no CRM contact mapped")
            return

        disposed = "disposed" in ctx.event.event_type.lower()
        ctx.clients.crm.add_note(link.crm_contact_id, format_communication_note(ctx.payload, disposed))
        attempt.target_id = link.crm_contact_id
