from __future__ import annotations

from dataclasses import dataclass

import httpx

from syncrelay.clients.base import ExternalSystem, SystemClient
from syncrelay.core.config import Settings
from syncrelay.services.resilience import CircuitBreakerRegistry, RetryPolicy

CRM = "crm"
TELEPHONY = "telephony"
MESSAGING = "messaging"


@dataclass(frozen=True)
class ExternalClients:
    crm: ExternalSystem
    telephony: ExternalSystem
    messaging: ExternalSystem


def build_clients(
    *,
    settings: Settings,
    http: httpx.Client,
    breakers: CircuitBreakerRegistry,
) -> ExternalClients:
    policy = RetryPolicy.from_settings(settings)

    def make(service: str, base_url: str, token: str) -> SystemClient:
        return SystemClient(
            service=service,
            http=http,
            base_url=base_url,
            api_token=token,
            breaker=breakers.get(service),
            policy=policy,
        )

    return ExternalClients(
        crm=make(CRM, settings.CRM_API_BASE_URL, settings.CRM_API_TOKEN),
        telephony=make(TELEPHONY, settings.TELEPHONY_API_BASE_URL, settings.TELEPHONY_API_TOKEN),
        messaging=make(MESSAGING, settings.MESSAGING_API_BASE_URL, settings.MESSAGING_API_TOKEN),
    )
