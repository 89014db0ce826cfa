from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from syncrelay.clients import ExternalClients
from syncrelay.core.config import Settings
from syncrelay.services.events import EventView


@dataclass(frozen=True)
class SyncContext:
    session: Session
    settings: Settings
    clients: ExternalClients
    event: EventView

    @property
    def correlation_id(self) -> str:
        return str(self.event.id)

    @property
    def payload(self) -> dict:
        return self.event.payload
