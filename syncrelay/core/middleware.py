from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from syncrelay.core.config import Settings
from syncrelay.core.logs import log_event, request_id_ctx
from syncrelay.core.metrics import observe_http_request
from syncrelay.core.security import new_random_token

logger = logging.getLogger("syncrelay.api")

# Inbound webhooks are never throttled.
RATE_LIMIT_EXEMPT_PREFIXES = ("/webhooks/",)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


@dataclass
class RateLimiter:
    """Sliding-window limiter keyed by client address."""

    max_requests: int
    window_seconds: int = 60
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _windows: dict[str, deque[float]] = field(default_factory=dict)

    def allow(self, key: str, *, now_ts: float) -> bool:
        cutoff = now_ts - float(self.window_seconds)
        with self._lock:
            window = self._windows.setdefault(key, deque())
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= self.max_requests:
                return False
            window.append(now_ts)
            if len(self._windows) > 10_000:
                self._prune(cutoff)
            return True

    def _prune(self, cutoff: float) -> None:
        for key in [k for k, w in self._windows.items() if not w or w[-1] <= cutoff]:
            del self._windows[key]


def client_address(request: Request) -> str:
    forwarded_for = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        return forwarded_for.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


def request_id_for(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    return incoming[:128] if incoming else new_random_token(nbytes=18)


def install_request_middleware(app: FastAPI, *, settings: Settings) -> None:
    """Request ids, security headers, per-client throttling, and one access log line per request."""
    limiter = (
        RateLimiter(max_requests=settings.RATE_LIMIT_REQUESTS_PER_MINUTE)
        if settings.RATE_LIMIT_REQUESTS_PER_MINUTE > 0
        else None
    )
    header_name = settings.REQUEST_ID_HEADER

    @app.middleware("http")
    async def request_context(request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        request_id = request_id_for(request, header_name=header_name)
        token = request_id_ctx.set(request_id)
        started = time.time()
        path = request.url.path
        throttled = (
            limiter is not None
            and not path.startswith(RATE_LIMIT_EXEMPT_PREFIXES)
            and not limiter.allow(client_address(request), now_ts=started)
        )
        status_code = 500
        try:
            if throttled:
                response: Response = JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})
            else:
                response = await call_next(request)
            status_code = response.status_code
            response.headers[header_name] = request_id
            for name, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(name, value)
            return response
        finally:
            duration_ms = int((time.time() - started) * 1000)
            route = request.scope.get("route")
            observe_http_request(
                method=request.method,
                path=getattr(route, "path", path),
                status_code=status_code,
                duration_ms=duration_ms,
                rate_limited=throttled,
            )
            log_event(
                logger,
                "http.request.completed",
                request_id=request_id,
                method=request.method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
                rate_limited=throttled,
            )
            request_id_ctx.reset(token)
