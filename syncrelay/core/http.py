from __future__ import annotations

from collections.abc import Generator

import httpx

from syncrelay.core.config import Settings, get_settings


def build_http_client(settings: Settings | None = None) -> httpx.Client:
    """Shared client for the CRM, telephony and messaging APIs and the alert webhook."""
    settings = settings or get_settings()
    return httpx.Client(
        timeout=httpx.Timeout(settings.EXTERNAL_HTTP_TIMEOUT_SECONDS, connect=min(5.0, settings.EXTERNAL_HTTP_TIMEOUT_SECONDS)),
        headers={"user-agent": f"{settings.OTEL_SERVICE_NAME}/{settings.VERSION}"},
        follow_redirects=False,
    )


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Overridden in tests with a MockTransport-backed client.
    with build_http_client() as client:
        yield client
