from __future__ import annotations

import hashlib
from typing import Any

import orjson

from syncrelay.models.enums import EntityType, EventSource, MessageDirection
from syncrelay.services.ingest.types import CanonicalEvent, NormalizedMessage

_EVENT_TYPE_KEYS = ("event", "type", "eventType")
_ENTITY_ID_KEYS = ("id", "contactId", "contact_id", "communication_id")
_NESTED_ID_KEYS = ("id", "contact_id", "communication_id")

_APPOINTMENT_FIELDS = ("appointmentId", "appointment_id", "startTime", "calendarId")
_CONTACT_FIELDS = ("firstName", "lastName", "phone", "email")

# Order matters: "Call-Summarized" must resolve before the generic Call pattern.
_TELEPHONY_PATTERNS: tuple[tuple[str, EntityType], ...] = (
    ("summarized", EntityType.call_summary),
    ("transcription", EntityType.transcription),
    ("recording", EntityType.recording),
    ("voicemail", EntityType.voicemail),
    ("communication", EntityType.communication),
    ("appointment", EntityType.appointment),
    ("contact", EntityType.contact),
    ("call", EntityType.call),
)
# Tag events ("contact.tag.added") must resolve before the generic contact pattern.
_CRM_PATTERNS: tuple[tuple[str, EntityType], ...] = (
    ("appointment", EntityType.appointment),
    ("tag", EntityType.tag),
    ("segment", EntityType.tag),
    ("contact", EntityType.contact),
    ("opportunity", EntityType.opportunity),
    ("pipeline", EntityType.opportunity),
    ("message", EntityType.message),
    ("outbound", EntityType.message),
)


def canonicalize(source: EventSource, body: dict[str, Any]) -> CanonicalEvent:
    event_type = extract_event_type(source, body)
    if event_type is None:
        return CanonicalEvent(
            source=source,
            event_type=None,
            entity_type=EntityType.unknown,
            entity_id=None,
            direction=None,
        )

    message = normalize_message(body) if source == EventSource.messaging else None
    return CanonicalEvent(
        source=source,
        event_type=event_type,
        entity_type=classify_entity_type(source, event_type),
        entity_id=extract_entity_id(source, body),
        direction=extract_direction(source, event_type, body, message),
        message=message,
    )


def extract_event_type(source: EventSource, body: dict[str, Any]) -> str | None:
    for key in _EVENT_TYPE_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    for container in ("data", "body"):
        nested = body.get(container)
        if isinstance(nested, dict):
            value = nested.get("event")
            if isinstance(value, str) and value.strip():
                return value.strip()

    if source == EventSource.crm:
        if any(body.get(k) for k in _APPOINTMENT_FIELDS):
            return "appointment.created"
        if any(body.get(k) for k in _CONTACT_FIELDS):
            return "contact.updated"
    return None


def classify_entity_type(source: EventSource, event_type: str) -> EntityType:
    lowered = event_type.lower()
    if source == EventSource.broadcast:
        return EntityType.broadcast
    if source == EventSource.messaging:
        if any(k in lowered for k in ("optout", "opt_out", "opt-out", "optin", "opt_in")):
            return EntityType.optout
        if lowered.startswith("conversation"):
            return EntityType.conversation
        return EntityType.message

    patterns = _TELEPHONY_PATTERNS if source == EventSource.telephony else _CRM_PATTERNS
    for needle, entity_type in patterns:
        if needle in lowered:
            return entity_type
    return EntityType.unknown


def extract_entity_id(source: EventSource, body: dict[str, Any]) -> str | None:
    if source == EventSource.broadcast:
        return _as_id(body.get("broadcastId") or body.get("broadcast_id"))
    if source == EventSource.messaging:
        msg = normalize_message(body)
        if msg.message_id:
            return msg.message_id
        if msg.conversation_id:
            return msg.conversation_id
        phone = _as_str(body.get("phone") or body.get("phoneNumber"))
        if not (msg.text or msg.from_number or phone):
            return None
        return content_hash(
            {"body": msg.text, "timestamp": msg.timestamp, "from": msg.from_number, "to": msg.to_number, "phone": phone}
        )

    for key in _ENTITY_ID_KEYS:
        value = _as_id(body.get(key))
        if value:
            return value

    contact = body.get("contact")
    if isinstance(contact, dict):
        value = _as_id(contact.get("id"))
        if value:
            return value

    for container in ("body", "data"):
        nested = body.get(container)
        if isinstance(nested, dict):
            for key in _NESTED_ID_KEYS:
                value = _as_id(nested.get(key))
                if value:
                    return value
    return None


def extract_direction(
    source: EventSource,
    event_type: str,
    body: dict[str, Any],
    message: NormalizedMessage | None,
) -> MessageDirection | None:
    if message is not None and message.direction is not None:
        return message.direction
    if source == EventSource.telephony:
        lowered = event_type.lower()
        if lowered.startswith("inbound"):
            return MessageDirection.inbound
        if lowered.startswith("outbound"):
            return MessageDirection.outbound
    if source == EventSource.crm and classify_entity_type(source, event_type) == EntityType.message:
        return MessageDirection.outbound
    return _parse_direction(body.get("direction"))


def normalize_message(body: dict[str, Any]) -> NormalizedMessage:
    msg: dict[str, Any] = body
    for container in ("message", "data"):
        nested = body.get(container)
        if isinstance(nested, dict):
            msg = nested
            break

    def pick(*keys: str) -> Any:
        for key in keys:
            if msg.get(key) not in (None, ""):
                return msg[key]
            if body.get(key) not in (None, ""):
                return body[key]
        return None

    return NormalizedMessage(
        message_id=_as_id(pick("messageId", "message_id")),
        conversation_id=_as_id(pick("conversationId", "conversation_id")),
        direction=_parse_direction(pick("direction")),
        from_number=_as_str(pick("from", "fromNumber", "from_number")),
        to_number=_as_str(pick("to", "toNumber", "to_number")),
        text=_as_str(pick("body", "text", "message_body")) or "",
        timestamp=_as_str(pick("timestamp", "createdAt", "created_at")),
        status=_as_str(pick("status")),
    )


def content_hash(obj: object) -> str:
    return hashlib.sha256(orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)).hexdigest()[:16]


def _parse_direction(raw: object) -> MessageDirection | None:
    if not isinstance(raw, str):
        return None
    lowered = raw.strip().lower()
    if lowered in {"inbound", "incoming", "in"}:
        return MessageDirection.inbound
    if lowered in {"outbound", "outgoing", "out"}:
        return MessageDirection.outbound
    return None


def _as_id(raw: object) -> str | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def _as_str(raw: object) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    if isinstance(raw, int | float):
        return str(raw)
    return None
