from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel


class WebhookAck(BaseModel):
    status: str
    event_id: UUID | None = None
    event_type: str | None = None
    entity_type: str | None = None
