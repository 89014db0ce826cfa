from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

import orjson

from syncrelay.services.ingest.types import CanonicalEvent

_DELIVERY_ID_KEYS = ("webhookId", "webhook_id", "deliveryId", "delivery_id", "eventId", "event_id", "messageId")
_TIMESTAMP_KEYS = ("timestamp", "dateUpdated", "date_updated", "updatedAt", "updated_at", "date")


def _stable_json_bytes(obj: object) -> bytes:
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint_discriminator(
    body: dict[str, Any],
    *,
    received_at: datetime | None = None,
    bucket_seconds: int = 0,
) -> dict[str, Any]:
    for key in _DELIVERY_ID_KEYS:
        value = body.get(key)
        if value not in (None, ""):
            return {"delivery_id": str(value)}

    for key in _TIMESTAMP_KEYS:
        value = body.get(key)
        if value not in (None, ""):
            return {"timestamp": str(value)}

    out: dict[str, Any] = {"content": sha256_hex(_stable_json_bytes(body))}
    if bucket_seconds > 0 and received_at is not None:
        out["bucket"] = int(received_at.timestamp()) // bucket_seconds
    return out


def compute_fingerprint(
    event: CanonicalEvent,
    body: dict[str, Any],
    *,
    received_at: datetime | None = None,
    bucket_seconds: int = 0,
) -> str:
    payload = {
        "source": event.source.value,
        "event_type": event.event_type,
        "entity_id": event.entity_id,
        "discriminator": fingerprint_discriminator(
            body, received_at=received_at, bucket_seconds=bucket_seconds
        ),
    }
    return sha256_hex(_stable_json_bytes(payload))
