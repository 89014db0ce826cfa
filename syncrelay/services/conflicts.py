from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

SYSTEM_TAG_PREFIX = "SYS:"
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


@dataclass(frozen=True)
class ContactRecord:
    source: str
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    tags: tuple[str, ...] = ()
    timezone: str | None = None
    address: str | None = None
    custom: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()


@dataclass(frozen=True)
class FieldDecision:
    field: str
    chosen_value: Any
    chosen_source: str
    reason: str
    discarded_value: Any = None


@dataclass(frozen=True)
class MergeResult:
    merged: ContactRecord
    decisions: tuple[FieldDecision, ...]

    @property
    def conflicts(self) -> list[FieldDecision]:
        return [d for d in self.decisions if d.discarded_value is not None]


def is_e164(phone: str | None) -> bool:
    return bool(phone) and _E164.match(phone) is not None


def merge_contacts(primary: ContactRecord, secondary: ContactRecord) -> MergeResult:
    """Merge two views of the same contact; `primary` is the configured source of truth.

    Deterministic: identical inputs always yield identical output and decisions.
    """
    decisions: list[FieldDecision] = []

    phone, phone_source, phone_reason = _pick_phone(primary, secondary)
    decisions.append(
        FieldDecision(
            field="phone",
            chosen_value=phone,
            chosen_source=phone_source,
            reason=phone_reason,
            discarded_value=_discarded(phone, primary.phone, secondary.phone),
        )
    )

    email, email_decision = _pick_email(primary, secondary)
    decisions.append(email_decision)

    if len(secondary.full_name) > len(primary.full_name):
        first_name, last_name, name_source = secondary.first_name, secondary.last_name, secondary.source
        name_reason = "longer_name"
        discarded_name = primary.full_name or None
    else:
        first_name, last_name, name_source = primary.first_name, primary.last_name, primary.source
        name_reason = "longer_name" if len(primary.full_name) > len(secondary.full_name) else "primary_on_tie"
        discarded_name = (
            secondary.full_name if secondary.full_name and secondary.full_name != primary.full_name else None
        )
    decisions.append(
        FieldDecision(
            field="name",
            chosen_value=" ".join(p for p in (first_name, last_name) if p) or None,
            chosen_source=name_source,
            reason=name_reason,
            discarded_value=discarded_name,
        )
    )

    timezone, tz_decision = _primary_unless_empty("timezone", primary, secondary)
    address, addr_decision = _primary_unless_empty("address", primary, secondary)
    decisions.extend([tz_decision, addr_decision])

    tags = merge_tags(primary.tags, secondary.tags)
    decisions.append(
        FieldDecision(field="tags", chosen_value=list(tags), chosen_source="both", reason="union")
    )

    custom = {**secondary.custom, **{k: v for k, v in primary.custom.items() if v is not None}}
    overridden = sorted(
        k
        for k, v in secondary.custom.items()
        if primary.custom.get(k) is not None and primary.custom[k] != v
    )
    decisions.append(
        FieldDecision(
            field="custom",
            chosen_value=custom,
            chosen_source=primary.source,
            reason="primary_precedence",
            discarded_value={k: secondary.custom[k] for k in overridden} or None,
        )
    )

    timestamps = [t for t in (primary.updated_at, secondary.updated_at) if t is not None]
    updated_at = max(timestamps) if timestamps else None

    merged = replace(
        primary,
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        tags=tags,
        timezone=timezone,
        address=address,
        custom=custom,
        updated_at=updated_at,
    )
    return MergeResult(merged=merged, decisions=tuple(decisions))


def merge_tags(primary: tuple[str, ...] | list[str], secondary: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    system: list[str] = []
    regular: list[str] = []
    for tag in [*primary, *secondary]:
        tag = tag.strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        (system if tag.startswith(SYSTEM_TAG_PREFIX) else regular).append(tag)
    return tuple(system + regular)


def _pick_phone(primary: ContactRecord, secondary: ContactRecord) -> tuple[str | None, str, str]:
    for record in (primary, secondary):
        if is_e164(record.phone):
            return record.phone, record.source, "e164_preferred"
    if primary.phone:
        return primary.phone, primary.source, "primary_non_empty"
    if secondary.phone:
        return secondary.phone, secondary.source, "secondary_fills_gap"
    return None, primary.source, "empty"


def _pick_email(primary: ContactRecord, secondary: ContactRecord) -> tuple[str | None, FieldDecision]:
    p = (primary.email or "").strip()
    s = (secondary.email or "").strip()
    if p and s and p.lower() != s.lower():
        return p, FieldDecision(
            field="email",
            chosen_value=p,
            chosen_source=primary.source,
            reason="conflict_primary_wins",
            discarded_value=s,
        )
    if p:
        return p, FieldDecision(field="email", chosen_value=p, chosen_source=primary.source, reason="primary_non_empty")
    if s:
        return s, FieldDecision(
            field="email", chosen_value=s, chosen_source=secondary.source, reason="secondary_fills_gap"
        )
    return None, FieldDecision(field="email", chosen_value=None, chosen_source=primary.source, reason="empty")


def _primary_unless_empty(
    name: str, primary: ContactRecord, secondary: ContactRecord
) -> tuple[str | None, FieldDecision]:
    p = getattr(primary, name)
    s = getattr(secondary, name)
    if p:
        return p, FieldDecision(
            field=name,
            chosen_value=p,
            chosen_source=primary.source,
            reason="primary_non_empty",
            discarded_value=s if s and s != p else None,
        )
    return s, FieldDecision(
        field=name,
        chosen_value=s,
        chosen_source=secondary.source if s else primary.source,
        reason="secondary_fills_gap" if s else "empty",
    )


def _discarded(chosen: str | None, a: str | None, b: str | None) -> str | None:
    for value in (a, b):
        if value and value != chosen:
            return value
    return None


def contact_from_payload(source: str, payload: dict[str, Any]) -> ContactRecord:
    def pick(*keys: str) -> Any:
        for key in keys:
            value = payload.get(key)
            if value not in (None, ""):
                return value
        return None

    raw_tags = pick("tags") or []
    if isinstance(raw_tags, str):
        raw_tags = raw_tags.split(",")
    custom = pick("customFields", "custom_fields", "custom") or {}
    if isinstance(custom, list):
        # [{"id"|"key": ..., "value": ...}] shape
        custom = {str(c.get("key") or c.get("id")): c.get("value") for c in custom if isinstance(c, dict)}

    updated_raw = pick("dateUpdated", "updatedAt", "updated_at")
    updated_at = None
    if isinstance(updated_raw, str):
        try:
            updated_at = datetime.fromisoformat(updated_raw.replace("Z", "+00:00"))
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=UTC)
        except ValueError:
            updated_at = None

    record_id = pick("id", "contactId", "contact_id")
    phone = pick("phone", "phone_number", "phoneNumber")
    return ContactRecord(
        source=source,
        id=str(record_id) if record_id is not None else None,
        first_name=pick("firstName", "first_name"),
        last_name=pick("lastName", "last_name"),
        email=pick("email"),
        phone=str(phone) if phone is not None else None,
        tags=tuple(str(t).strip() for t in raw_tags if str(t).strip()),
        timezone=pick("timezone"),
        address=pick("address1", "address"),
        custom=dict(custom) if isinstance(custom, dict) else {},
        updated_at=updated_at,
    )


def contact_to_payload(record: ContactRecord, *, record_id: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "firstName": record.first_name,
        "lastName": record.last_name,
        "email": record.email,
        "phone": record.phone,
        "tags": list(record.tags),
        "timezone": record.timezone,
        "address": record.address,
        "customFields": record.custom,
    }
    out = {k: v for k, v in out.items() if v not in (None, [], {})}
    if record_id:
        out["id"] = record_id
    return out
