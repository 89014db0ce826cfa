from __future__ import annotations

from datetime import UTC, datetime

from syncrelay.services.conflicts import (
    ContactRecord,
    contact_from_payload,
    contact_to_payload,
    is_e164,
    merge_contacts,
    merge_tags,
)


def _crm(**kwargs) -> ContactRecord:
    return ContactRecord(source="crm", id="c-1", **kwargs)


def _telephony(**kwargs) -> ContactRecord:
    return ContactRecord(source="telephony", id="t-1", **kwargs)


def test_merge_is_deterministic() -> None:
    a = _crm(first_name="Ada", phone="5551234567", email="ada@example.com", tags=("VIP",))
    b = _telephony(first_name="Ada", last_name="Lovelace", phone="+15551234567", tags=("SYS:synced", "VIP"))
    assert merge_contacts(a, b) == merge_contacts(a, b)


def test_e164_phone_is_preferred_over_primary() -> None:
    result = merge_contacts(_crm(phone="555-123-4567"), _telephony(phone="+15551234567"))
    assert result.merged.phone == "+15551234567"
    decision = next(d for d in result.decisions if d.field == "phone")
    assert decision.chosen_source == "telephony"
    assert decision.reason == "e164_preferred"
    assert decision.discarded_value == "555-123-4567"


def test_primary_phone_fills_when_neither_is_e164() -> None:
    result = merge_contacts(_crm(phone="555-123-4567"), _telephony(phone="5551234567"))
    assert result.merged.phone == "555-123-4567"

    gap = merge_contacts(_crm(), _telephony(phone="5551234567"))
    assert gap.merged.phone == "5551234567"


def test_email_conflict_keeps_primary_and_records_it() -> None:
    result = merge_contacts(_crm(email="ada@crm.example"), _telephony(email="ada@phone.example"))
    assert result.merged.email == "ada@crm.example"
    [conflict] = [d for d in result.conflicts if d.field == "email"]
    assert conflict.reason == "conflict_primary_wins"
    assert conflict.discarded_value == "ada@phone.example"


def test_email_case_difference_is_not_a_conflict() -> None:
    result = merge_contacts(_crm(email="Ada@Example.com"), _telephony(email="ada@example.com"))
    assert result.merged.email == "Ada@Example.com"
    assert [d for d in result.conflicts if d.field == "email"] == []


def test_longer_name_wins() -> None:
    result = merge_contacts(_crm(first_name="Ada"), _telephony(first_name="Ada", last_name="Lovelace"))
    assert (result.merged.first_name, result.merged.last_name) == ("Ada", "Lovelace")
    assert result.merged.id == "c-1"


def test_tags_union_puts_system_tags_first() -> None:
    assert merge_tags(("VIP", "Lead"), ("SYS:synced", "VIP", " ", "SYS:dnc")) == (
        "SYS:synced",
        "SYS:dnc",
        "VIP",
        "Lead",
    )


def test_custom_fields_primary_precedence() -> None:
    result = merge_contacts(
        _crm(custom={"plan": "gold", "region": None}),
        _telephony(custom={"plan": "silver", "region": "east", "agent": "bob"}),
    )
    assert result.merged.custom == {"plan": "gold", "region": "east", "agent": "bob"}
    decision = next(d for d in result.decisions if d.field == "custom")
    assert decision.discarded_value == {"plan": "silver"}


def test_latest_timestamp_is_kept() -> None:
    early = datetime(2026, 10, 1, 9, tzinfo=UTC)
    late = datetime(2026, 10, 1, 10, tzinfo=UTC)
    result = merge_contacts(_crm(updated_at=early), _telephony(updated_at=late))
    assert result.merged.updated_at == late


def test_e164() -> None:
    assert is_e164("+15551234567")
    assert not is_e164("5551234567")
    assert not is_e164("+0123")
    assert not is_e164(None)


def test_payload_round_trip_shapes() -> None:
    record = contact_from_payload(
        "crm",
        {
            "id": 17,
            "firstName": "Ada",
            "phone": 5551234567,
            "tags": "VIP, Lead",
            "customFields": [{"key": "plan", "value": "gold"}],
            "dateUpdated": "2026-10-01T10:00:00Z",
        },
    )
    assert record.id == "17"
    assert record.phone == "5551234567"
    assert record.tags == ("VIP", "Lead")
    assert record.custom == {"plan": "gold"}
    assert record.updated_at == datetime(2026, 10, 1, 10, tzinfo=UTC)

    payload = contact_to_payload(record, record_id="t-9")
    assert payload == {
        "firstName": "Ada",
        "phone": "5551234567",
        "tags": ["VIP", "Lead"],
        "customFields": {"plan": "gold"},
        "id": "t-9",
    }
