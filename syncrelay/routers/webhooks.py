from __future__ import annotations

import logging
from typing import Any

import orjson
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from syncrelay.core.config import Settings, get_settings
from syncrelay.core.errors import IngestionRejected
from syncrelay.core.logs import log_event
from syncrelay.core.metrics import observe_webhook
from syncrelay.core.security import verify_basic_auth, verify_hmac_signature, verify_shared_secret
from syncrelay.db.session import get_session
from syncrelay.models.enums import EventSource
from syncrelay.schemas.webhooks import WebhookAck
from syncrelay.services.ingest.ingest import ingest_webhook

logger = logging.getLogger("syncrelay.api")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


def authenticate_webhook(*, source: EventSource, request: Request, body: bytes, settings: Settings) -> None:
    headers = request.headers
    if source == EventSource.crm:
        ok = verify_hmac_signature(
            signature=headers.get(settings.CRM_SIGNATURE_HEADER),
            secret=settings.CRM_WEBHOOK_SECRET,
            body=body,
        )
    elif source == EventSource.telephony:
        ok = verify_basic_auth(
            authorization=headers.get("authorization"),
            username=settings.TELEPHONY_WEBHOOK_BASIC_USER,
            password=settings.TELEPHONY_WEBHOOK_BASIC_PASS,
        )
    elif source == EventSource.messaging:
        ok = verify_shared_secret(
            provided=headers.get(settings.MESSAGING_SECRET_HEADER),
            expected=settings.MESSAGING_WEBHOOK_SECRET,
        )
    else:
        ok = verify_shared_secret(
            provided=headers.get(settings.BROADCAST_SECRET_HEADER),
            expected=settings.BROADCAST_WEBHOOK_SECRET,
        )
    if not ok:
        raise IngestionRejected(status_code=status.HTTP_401_UNAUTHORIZED, reason="Invalid webhook credentials")


def parse_webhook_body(body: bytes) -> dict[str, Any]:
    try:
        parsed = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        raise IngestionRejected(status_code=status.HTTP_400_BAD_REQUEST, reason="Invalid JSON body") from e
    if not isinstance(parsed, dict):
        raise IngestionRejected(status_code=status.HTTP_400_BAD_REQUEST, reason="JSON body must be an object")
    return parsed


def _receive(*, source: EventSource, request: Request, body: bytes, session: Session) -> WebhookAck:
    settings = get_settings()
    try:
        authenticate_webhook(source=source, request=request, body=body, settings=settings)
        payload = parse_webhook_body(body)
    except IngestionRejected as e:
        observe_webhook(source=source.value, outcome="rejected")
        log_event(
            logger,
            "webhook.rejected",
            level=logging.WARNING,
            source=source.value,
            status_code=e.status_code,
            reason=e.reason,
        )
        raise HTTPException(status_code=e.status_code, detail=e.reason) from e

    try:
        result = ingest_webhook(session=session, settings=settings, source=source, body=payload)
    except SQLAlchemyError as e:
        session.rollback()
        observe_webhook(source=source.value, outcome="error")
        log_event(logger, "webhook.storage_failed", level=logging.ERROR, source=source.value, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to store webhook"
        ) from e

    observe_webhook(source=source.value, outcome=result.status)
    return WebhookAck(
        status=result.status,
        event_id=result.event_id,
        event_type=result.event_type,
        entity_type=result.entity_type.value if result.entity_type else None,
    )


@router.post("/crm", response_model=WebhookAck, response_model_exclude_none=True)
def crm_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    session: Session = Depends(get_session),
) -> WebhookAck:
    return _receive(source=EventSource.crm, request=request, body=body, session=session)


@router.post("/telephony", response_model=WebhookAck, response_model_exclude_none=True)
def telephony_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    session: Session = Depends(get_session),
) -> WebhookAck:
    return _receive(source=EventSource.telephony, request=request, body=body, session=session)


@router.post("/messaging", response_model=WebhookAck, response_model_exclude_none=True)
def messaging_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    session: Session = Depends(get_session),
) -> WebhookAck:
    return _receive(source=EventSource.messaging, request=request, body=body, session=session)


@router.post("/broadcast", response_model=WebhookAck, response_model_exclude_none=True)
def broadcast_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    session: Session = Depends(get_session),
) -> WebhookAck:
    return _receive(source=EventSource.broadcast, request=request, body=body, session=session)
