from __future__ import annotations


class IngestionRejected(Exception):
    def __init__(self, *, status_code: int, reason: str) -> None:
        super().__init__(reason)
        self.status_code = status_code
        self.reason = reason


class ComplianceViolation(RuntimeError):
    """Outbound contact blocked by the opt-out registry. Never retried."""

    def __init__(self, *, phone_number: str, reason: str = "recipient has opted out") -> None:
        super().__init__(f"{reason}: {phone_number}")
        self.phone_number = phone_number


class ExternalServiceError(RuntimeError):
    def __init__(
        self,
        *,
        service: str,
        message: str,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(f"{service} API error: {message}")
        self.service = service
        self.status_code = status_code
        self.transient = transient


class CircuitOpenError(RuntimeError):
    def __init__(self, *, service: str, retry_after_seconds: float) -> None:
        super().__init__(f"circuit open for {service}; retry after {retry_after_seconds:.1f}s")
        self.service = service
        self.retry_after_seconds = retry_after_seconds


class IdentityConflict(RuntimeError):
    """A telephony contact is already linked to a different CRM contact."""

    def __init__(self, *, telephony_contact_id: str, crm_contact_id: str, linked_crm_contact_id: str) -> None:
        super().__init__(
            f"telephony contact {telephony_contact_id} is already linked to CRM contact {linked_crm_contact_id}"
        )
        self.telephony_contact_id = telephony_contact_id
        self.crm_contact_id = crm_contact_id
        self.linked_crm_contact_id = linked_crm_contact_id


def is_permanent(exc: BaseException) -> bool:
    if isinstance(exc, (ComplianceViolation, IdentityConflict)):
        return True
    if isinstance(exc, ExternalServiceError):
        return not exc.transient
    return False
