from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from typing import Any

# Set per request by the HTTP middleware; webhook and ops log lines pick it up automatically.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    payload = {"event": event, **fields}
    request_id = request_id_ctx.get()
    if request_id is not None:
        payload.setdefault("request_id", request_id)
    logger.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
