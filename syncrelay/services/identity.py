from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.errors import IdentityConflict
from syncrelay.core.logs import log_event
from syncrelay.models.enums import SyncDirection
from syncrelay.services.compliance import normalize_phone

if TYPE_CHECKING:
    from syncrelay.sync.context import SyncContext

logger = logging.getLogger("syncrelay.worker")


@dataclass(frozen=True)
class IdentityLink:
    crm_contact_id: str
    telephony_contact_id: str | None
    phone_number: str | None
    email: str | None


def _to_link(row: Any) -> IdentityLink:
    return IdentityLink(
        crm_contact_id=row["crm_contact_id"],
        telephony_contact_id=row["telephony_contact_id"],
        phone_number=row["phone_number"],
        email=row["email"],
    )


def _clean_email(email: str | None) -> str | None:
    return email.strip().lower() if email and email.strip() else None


def find_mapping(
    session: Session,
    *,
    crm_contact_id: str | None = None,
    telephony_contact_id: str | None = None,
    phone: str | None = None,
    email: str | None = None,
) -> IdentityLink | None:
    """Direct id lookup first, then phone, then email."""
    lookups: list[tuple[str, str | None]] = [
        ("crm_contact_id", crm_contact_id),
        ("telephony_contact_id", telephony_contact_id),
        ("phone_number", normalize_phone(phone)),
        ("email", _clean_email(email)),
    ]
    for column, value in lookups:
        if not value:
            continue
        row = (
            session.execute(
                text(
                    f"""
                    SELECT crm_contact_id, telephony_contact_id, phone_number, email
                    FROM identity_mappings
                    WHERE {column} = :value
                    ORDER BY last_synced_at DESC
                    LIMIT 1
                    """
                ),
                {"value": value},
            )
            .mappings()
            .fetchone()
        )
        if row is not None:
            return _to_link(row)
    return None


def ensure_unlinked(session: Session, *, telephony_contact_id: str, crm_contact_id: str) -> None:
    owner = find_mapping(session, telephony_contact_id=telephony_contact_id)
    if owner is not None and owner.crm_contact_id != crm_contact_id:
        raise IdentityConflict(
            telephony_contact_id=telephony_contact_id,
            crm_contact_id=crm_contact_id,
            linked_crm_contact_id=owner.crm_contact_id,
        )


def upsert_mapping(
    session: Session,
    *,
    crm_contact_id: str,
    telephony_contact_id: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    sync_direction: SyncDirection = SyncDirection.bidirectional,
) -> IdentityLink:
    """Link a CRM contact to its telephony counterpart.

    Raises IdentityConflict, before writing, when the telephony contact is
    already linked to a different CRM contact.
    """
    if telephony_contact_id:
        ensure_unlinked(session, telephony_contact_id=telephony_contact_id, crm_contact_id=crm_contact_id)
    row = (
        session.execute(
            text(
                """
                INSERT INTO identity_mappings (
                  crm_contact_id,
                  telephony_contact_id,
                  phone_number,
                  email,
                  sync_direction,
                  last_synced_at
                )
                VALUES (:crm_contact_id, :telephony_contact_id, :phone, :email, :sync_direction, now())
                ON CONFLICT (crm_contact_id) DO UPDATE
                SET telephony_contact_id = COALESCE(EXCLUDED.telephony_contact_id, identity_mappings.telephony_contact_id),
                    phone_number = COALESCE(EXCLUDED.phone_number, identity_mappings.phone_number),
                    email = COALESCE(EXCLUDED.email, identity_mappings.email),
                    last_synced_at = now()
                RETURNING crm_contact_id, telephony_contact_id, phone_number, email
                """
            ),
            {
                "crm_contact_id": crm_contact_id,
                "telephony_contact_id": telephony_contact_id,
                "phone": normalize_phone(phone),
                "email": _clean_email(email),
                "sync_direction": sync_direction.value,
            },
        )
        .mappings()
        .one()
    )
    return _to_link(row)


def resolve_crm_identity(
    ctx: SyncContext,
    *,
    telephony_contact_id: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    create_payload: dict[str, Any] | None = None,
    sync_direction: SyncDirection = SyncDirection.telephony_to_crm,
) -> IdentityLink | None:
    """Find or create the CRM contact for a telephony/messaging contact.

    Order: direct id, phone/email mapping, CRM search, CRM create. Returns None
    only when nothing matches and no `create_payload` was given.
    """
    link = find_mapping(ctx.session, telephony_contact_id=telephony_contact_id, phone=phone, email=email)
    if link is not None:
        if telephony_contact_id and link.telephony_contact_id is None:
            link = upsert_mapping(
                ctx.session,
                crm_contact_id=link.crm_contact_id,
                telephony_contact_id=telephony_contact_id,
                phone=phone,
                email=email,
                sync_direction=sync_direction,
            )
        return link

    found = ctx.clients.crm.search("contact", phone=normalize_phone(phone), email=_clean_email(email))
    crm_contact_id = str(found["id"]) if found and found.get("id") else None
    how = "search"
    if crm_contact_id is None:
        if create_payload is None:
            return None
        created = ctx.clients.crm.upsert("contact", create_payload)
        if not created.get("id"):
            raise RuntimeError("CRM contact create returned no id")
        crm_contact_id = str(created["id"])
        how = "create"

    link = upsert_mapping(
        ctx.session,
        crm_contact_id=crm_contact_id,
        telephony_contact_id=telephony_contact_id,
        phone=phone,
        email=email,
        sync_direction=sync_direction,
    )
    log_event(logger, "identity.resolved", target="crm", via=how, crm_contact_id=crm_contact_id)
    return link


def resolve_telephony_identity(
    ctx: SyncContext,
    *,
    crm_contact_id: str,
    phone: str | None = None,
    email: str | None = None,
    create_payload: dict[str, Any] | None = None,
) -> IdentityLink | None:
    """Find or create the telephony contact linked to a CRM contact."""
    link = find_mapping(ctx.session, crm_contact_id=crm_contact_id)
    if link is not None and link.telephony_contact_id:
        return link
    by_attrs = find_mapping(ctx.session, phone=phone, email=email)
    if by_attrs is not None and by_attrs.telephony_contact_id and by_attrs.crm_contact_id == crm_contact_id:
        return by_attrs

    found = ctx.clients.telephony.search("contact", phone=normalize_phone(phone), email=_clean_email(email))
    telephony_contact_id = str(found["id"]) if found and found.get("id") else None
    how = "search"
    if telephony_contact_id is None:
        if create_payload is None:
            return link
        created = ctx.clients.telephony.upsert("contact", create_payload)
        if not created.get("id"):
            raise RuntimeError("telephony contact create returned no id")
        telephony_contact_id = str(created["id"])
        how = "create"

    link = upsert_mapping(
        ctx.session,
        crm_contact_id=crm_contact_id,
        telephony_contact_id=telephony_contact_id,
        phone=phone,
        email=email,
        sync_direction=SyncDirection.crm_to_telephony,
    )
    log_event(logger, "identity.resolved", target="telephony", via=how, telephony_contact_id=telephony_contact_id)
    return link
