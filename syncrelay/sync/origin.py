from __future__ import annotations

from typing import Any

from syncrelay.models.enums import EntityType
from syncrelay.services.conflicts import SYSTEM_TAG_PREFIX

ORIGIN_MARKER = "SYS:relay_origin"

_EXTERNAL_ID_KEYS = ("externalIds", "external_ids")
_NOTE_KEYS = ("note", "notes", "body")
_TAG_KEYS = ("tag", "tagName", "tag_name")


def is_relay_originated(entity_type: EntityType, payload: dict[str, Any]) -> bool:
    """True when the event echoes a write this service made itself."""
    if payload.get("origin") == ORIGIN_MARKER or payload.get("source") == ORIGIN_MARKER:
        return True

    for key in _EXTERNAL_ID_KEYS:
        ids = payload.get(key)
        if isinstance(ids, dict) and ORIGIN_MARKER in {*ids.keys(), *map(str, ids.values())}:
            return True
        if isinstance(ids, list) and ORIGIN_MARKER in map(str, ids):
            return True

    for key in _NOTE_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and ORIGIN_MARKER in value:
            return True

    if entity_type == EntityType.tag:
        tag = tag_from_payload(payload)
        if tag is not None and tag.startswith(SYSTEM_TAG_PREFIX):
            return True
    return False


def tag_from_payload(payload: dict[str, Any]) -> str | None:
    for key in _TAG_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict) and isinstance(value.get("name"), str):
            return value["name"].strip() or None
    tags = payload.get("tags")
    if isinstance(tags, list) and tags and isinstance(tags[0], str):
        return tags[0].strip() or None
    return None


def with_origin_marker(note: str) -> str:
    return f"{note}\n\n{ORIGIN_MARKER}"
