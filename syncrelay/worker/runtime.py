from __future__ import annotations

from dataclasses import dataclass

import httpx

from syncrelay.clients import ExternalClients, build_clients
from syncrelay.core.config import Settings, get_settings
from syncrelay.core.http import build_http_client
from syncrelay.services.resilience import CircuitBreakerRegistry
from syncrelay.sync.router import DispatchTable, build_dispatch_table


@dataclass(frozen=True)
class WorkerRuntime:
    """Process-wide collaborators shared by every job the worker runs."""

    settings: Settings
    clients: ExternalClients
    dispatch_table: DispatchTable
    breakers: CircuitBreakerRegistry
    http: httpx.Client

    def close(self) -> None:
        self.http.close()


def build_runtime(*, settings: Settings | None = None, http: httpx.Client | None = None) -> WorkerRuntime:
    settings = settings or get_settings()
    http = http or build_http_client(settings)
    breakers = CircuitBreakerRegistry.from_settings(settings)
    return WorkerRuntime(
        settings=settings,
        clients=build_clients(settings=settings, http=http, breakers=breakers),
        dispatch_table=build_dispatch_table(),
        breakers=breakers,
        http=http,
    )
