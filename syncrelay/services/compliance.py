from __future__ import annotations

import logging
import re

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.errors import ComplianceViolation
from syncrelay.core.logs import log_event
from syncrelay.models.enums import OptoutStatus

logger = logging.getLogger("syncrelay.worker")

STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "OPT-OUT", "OPTOUT"})
HELP_KEYWORDS = frozenset({"HELP", "INFO", "ASSIST"})
DNC_SMS_TAGS = ("DNC-SMS", "SMS Opted Out")

_NON_DIGITS = re.compile(r"\D+")
_PUNCTUATION = re.compile(r"[^\w\s-]+")


def normalize_phone(raw: str | int | None) -> str | None:
    if raw is None or raw == "":
        return None
    raw = str(raw).strip()
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    # Bare 10-digit numbers are assumed to be NANP.
    if not raw.startswith("+") and len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def _first_word(body: str | None) -> str:
    if not body:
        return ""
    cleaned = _PUNCTUATION.sub(" ", body).strip().upper()
    return cleaned.split()[0] if cleaned else ""


def is_stop_message(body: str | None) -> bool:
    # Carriers treat the keyword as the whole message or its leading word.
    return _first_word(body) in STOP_KEYWORDS


def is_help_message(body: str | None) -> bool:
    return _first_word(body) in HELP_KEYWORDS


def get_optout_status(session: Session, phone_number: str) -> OptoutStatus | None:
    row = session.execute(
        text("SELECT status FROM optout_registry WHERE phone_number = :phone"),
        {"phone": phone_number},
    ).fetchone()
    if row is None:
        return None
    return OptoutStatus(str(row[0]))


def record_optout(
    session: Session,
    *,
    phone_number: str,
    status: OptoutStatus,
    source: str,
    reason: str | None = None,
) -> str:
    """Upsert the registry and commit before any downstream call is made."""
    normalized = normalize_phone(phone_number)
    if normalized is None:
        raise ValueError(f"invalid phone number: {phone_number!r}")
    session.execute(
        text(
            """
            INSERT INTO optout_registry (phone_number, status, source, reason, last_event_at)
            VALUES (:phone, :status, :source, :reason, now())
            ON CONFLICT (phone_number) DO UPDATE
            SET status = EXCLUDED.status,
                source = EXCLUDED.source,
                reason = EXCLUDED.reason,
                last_event_at = now()
            """
        ),
        {"phone": normalized, "status": status.value, "source": source, "reason": reason},
    )
    session.commit()
    log_event(logger, "compliance.registry_updated", phone=normalized, status=status.value, source=source)
    return normalized


def ensure_can_send(session: Session, phone_number: str) -> str:
    normalized = normalize_phone(phone_number)
    if normalized is None:
        raise ComplianceViolation(phone_number=str(phone_number), reason="invalid recipient")
    if get_optout_status(session, normalized) == OptoutStatus.opted_out:
        log_event(logger, "compliance.send_blocked", level=logging.WARNING, phone=normalized)
        raise ComplianceViolation(phone_number=normalized)
    return normalized
