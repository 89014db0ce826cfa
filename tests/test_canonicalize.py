from __future__ import annotations

import pytest

from syncrelay.models.enums import EntityType, EventSource, MessageDirection
from syncrelay.services.ingest.canonicalize import canonicalize, classify_entity_type, normalize_message


@pytest.mark.parametrize(
    ("event_type", "expected"),
    [
        ("Call-Summarized", EntityType.call_summary),
        ("InboundPhoneCall-Ended", EntityType.call),
        ("OutboundPhoneCall-Dispositioned", EntityType.call),
        ("Call-Transcription", EntityType.transcription),
        ("Call-Recording", EntityType.recording),
        ("Voicemail-Received", EntityType.voicemail),
        ("Communication-Created", EntityType.communication),
        ("Appointment-Scheduled", EntityType.appointment),
        ("Contact-Updated", EntityType.contact),
        ("Agent-LoggedIn", EntityType.unknown),
    ],
)
def test_telephony_entity_classification(event_type: str, expected: EntityType) -> None:
    assert classify_entity_type(EventSource.telephony, event_type) == expected


@pytest.mark.parametrize(
    ("event_type", "expected"),
    [
        ("contact.created", EntityType.contact),
        ("ContactTagUpdate", EntityType.tag),
        ("contact.tag.added", EntityType.tag),
        ("contact.tag.removed", EntityType.tag),
        ("tag.added", EntityType.tag),
        ("segment.joined", EntityType.tag),
        ("opportunity.stage_changed", EntityType.opportunity),
        ("pipeline.moved", EntityType.opportunity),
        ("outbound.sms", EntityType.message),
        ("appointment.created", EntityType.appointment),
        ("invoice.paid", EntityType.unknown),
    ],
)
def test_crm_entity_classification(event_type: str, expected: EntityType) -> None:
    assert classify_entity_type(EventSource.crm, event_type) == expected


def test_messaging_and_broadcast_classification() -> None:
    assert classify_entity_type(EventSource.messaging, "contact.optout") == EntityType.optout
    assert classify_entity_type(EventSource.messaging, "conversation.closed") == EntityType.conversation
    assert classify_entity_type(EventSource.messaging, "message.received") == EntityType.message
    assert classify_entity_type(EventSource.broadcast, "broadcast.completed") == EntityType.broadcast


def test_missing_event_type_is_a_connectivity_ping() -> None:
    event = canonicalize(EventSource.telephony, {"hello": "world"})
    assert event.is_ping
    assert event.entity_type == EntityType.unknown
    assert event.entity_id is None


def test_event_type_from_nested_data() -> None:
    event = canonicalize(EventSource.telephony, {"data": {"event": "Contact-Updated", "id": 7}})
    assert event.event_type == "Contact-Updated"
    assert event.entity_type == EntityType.contact
    assert event.entity_id == "7"


def test_crm_structural_inference() -> None:
    contact = canonicalize(EventSource.crm, {"id": "c-1", "firstName": "Ada", "phone": "+15551234567"})
    assert contact.event_type == "contact.updated"
    assert contact.entity_type == EntityType.contact

    appointment = canonicalize(EventSource.crm, {"id": "a-1", "calendarId": "cal", "startTime": "2026-10-01T10:00"})
    assert appointment.event_type == "appointment.created"
    assert appointment.entity_type == EntityType.appointment


def test_entity_id_fallback_order() -> None:
    assert canonicalize(EventSource.telephony, {"event": "Contact-Updated", "id": 42}).entity_id == "42"
    assert (
        canonicalize(EventSource.telephony, {"event": "Contact-Updated", "contact": {"id": "nested"}}).entity_id
        == "nested"
    )
    assert (
        canonicalize(
            EventSource.telephony, {"event": "Call-Transcription", "body": {"communication_id": "comm-9"}}
        ).entity_id
        == "comm-9"
    )
    assert canonicalize(EventSource.telephony, {"event": "Contact-Updated"}).entity_id is None


def test_telephony_direction_from_event_name() -> None:
    inbound = canonicalize(EventSource.telephony, {"event": "InboundPhoneCall-Ended", "id": 1})
    outbound = canonicalize(EventSource.telephony, {"event": "OutboundPhoneCall-Ended", "id": 2})
    assert inbound.direction == MessageDirection.inbound
    assert outbound.direction == MessageDirection.outbound


def test_messaging_message_normalization() -> None:
    body = {
        "type": "message.received",
        "message": {
            "messageId": "m-1",
            "conversationId": "conv-1",
            "direction": "incoming",
            "from": "+15551230000",
            "to": "+15559990000",
            "body": "hello",
        },
    }
    event = canonicalize(EventSource.messaging, body)
    assert event.entity_type == EntityType.message
    assert event.entity_id == "m-1"
    assert event.direction == MessageDirection.inbound
    assert event.message is not None
    assert event.message.text == "hello"
    assert event.message.from_number == "+15551230000"


def test_messaging_id_falls_back_to_content_hash() -> None:
    body = {"type": "message.received", "from": "+15551230000", "body": "STOP", "timestamp": "t1"}
    first = canonicalize(EventSource.messaging, body).entity_id
    again = canonicalize(EventSource.messaging, dict(body)).entity_id
    other = canonicalize(EventSource.messaging, {**body, "timestamp": "t2"}).entity_id

    assert first is not None
    assert len(first) == 16
    assert first == again
    assert first != other


def test_normalize_message_reads_root_fields() -> None:
    msg = normalize_message({"text": "hi", "fromNumber": 5551230000, "direction": "outbound"})
    assert msg.text == "hi"
    assert msg.from_number == "5551230000"
    assert msg.direction == MessageDirection.outbound


def test_broadcast_entity_id() -> None:
    event = canonicalize(EventSource.broadcast, {"event": "broadcast.completed", "broadcastId": "b-1"})
    assert event.entity_type == EntityType.broadcast
    assert event.entity_id == "b-1"


def test_crm_contact_tag_event_keeps_contact_id() -> None:
    event = canonicalize(EventSource.crm, {"type": "contact.tag.added", "contactId": "c-1", "tag": "Hot Leads"})
    assert event.entity_type == EntityType.tag
    assert event.entity_id == "c-1"
