from __future__ import annotations

from typing import Any

from syncrelay.models.enums import SyncDirection
from syncrelay.services.sync_log import sync_attempt
from syncrelay.sync.context import SyncContext

_COUNT_KEYS = ("sent", "delivered", "failed", "replied", "opted_out", "clicked")


def summarize_broadcast(broadcast_id: str, stats: dict[str, Any]) -> dict[str, Any]:
    counts = {}
    for key in _COUNT_KEYS:
        try:
            counts[key] = int(stats.get(key) or 0)
        except (TypeError, ValueError):
            counts[key] = 0
    sent = counts["sent"]
    return {
        "externalId": broadcast_id,
        "name": stats.get("name"),
        "status": stats.get("status"),
        **counts,
        "delivery_rate": round(counts["delivered"] / sent * 100, 2) if sent else 0.0,
        "reply_rate": round(counts["replied"] / sent * 100, 2) if sent else 0.0,
        "optout_rate": round(counts["opted_out"] / sent * 100, 2) if sent else 0.0,
    }


def sync_broadcast(ctx: SyncContext) -> None:
    broadcast_id = ctx.event.entity_id or ""
    with sync_attempt(
        ctx.session,
        direction=SyncDirection.broadcast_to_crm.value,
        entity_type="broadcast",
        entity_id=broadcast_id,
        source_id=broadcast_id,
        correlation_id=ctx.correlation_id,
    ) as attempt:
        stats = ctx.clients.messaging.read("broadcast", broadcast_id)
        if stats is None:
            stats = ctx.payload.get("analytics") or ctx.payload.get("stats") or ctx.payload
        saved = ctx.clients.crm.upsert("broadcast_analytics", summarize_broadcast(broadcast_id, stats))
        attempt.target_id = str(saved["id"]) if saved.get("id") else None
