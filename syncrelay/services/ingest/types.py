from __future__ import annotations

from dataclasses import dataclass

from syncrelay.models.enums import EntityType, EventSource, MessageDirection


@dataclass(frozen=True)
class NormalizedMessage:
    message_id: str | None
    conversation_id: str | None
    direction: MessageDirection | None
    from_number: str | None
    to_number: str | None
    text: str
    timestamp: str | None
    status: str | None


@dataclass(frozen=True)
class CanonicalEvent:
    source: EventSource
    event_type: str | None
    entity_type: EntityType
    entity_id: str | None
    direction: MessageDirection | None
    message: NormalizedMessage | None = None

    @property
    def is_ping(self) -> bool:
        return self.event_type is None
