from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from syncrelay.core.errors import CircuitOpenError, ExternalServiceError
from syncrelay.core.metrics import observe_external_call
from syncrelay.services.resilience import CircuitBreaker, RetryPolicy, execute_with_retry

logger = logging.getLogger("syncrelay.worker")


class ExternalSystem(Protocol):
    service: str

    def read(self, kind: str, record_id: str) -> dict[str, Any] | None: ...

    def search(self, kind: str, *, phone: str | None = None, email: str | None = None) -> dict[str, Any] | None: ...

    def upsert(self, kind: str, record: dict[str, Any]) -> dict[str, Any]: ...

    def add_tags(self, contact_id: str, tags: list[str]) -> None: ...

    def add_note(self, contact_id: str, body: str) -> None: ...

    def add_to_list(self, list_name: str, contact_id: str) -> None: ...

    def send(self, message: dict[str, Any]) -> str: ...


class SystemClient:
    """Generic REST capability for one external system.

    Each attempt passes through the service circuit breaker and transient
    failures are retried with backoff around it. Every retry is a separate
    breaker-admitted call; an open circuit is never retried.
    """

    def __init__(
        self,
        *,
        service: str,
        http: httpx.Client,
        base_url: str,
        api_token: str,
        breaker: CircuitBreaker,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.service = service
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._breaker = breaker
        self._policy = policy
        self._sleep = sleep

    def read(self, kind: str, record_id: str) -> dict[str, Any] | None:
        return self._request("GET", f"/{kind}s/{record_id}", allow_not_found=True)

    def search(self, kind: str, *, phone: str | None = None, email: str | None = None) -> dict[str, Any] | None:
        params = {k: v for k, v in {"phone": phone, "email": email}.items() if v}
        if not params:
            return None
        payload = self._request("GET", f"/{kind}s/search", params=params, allow_not_found=True)
        if payload is None:
            return None
        items = payload.get("items") if isinstance(payload.get("items"), list) else None
        if items is not None:
            return items[0] if items else None
        return payload if payload.get("id") else None

    def upsert(self, kind: str, record: dict[str, Any]) -> dict[str, Any]:
        record_id = record.get("id")
        if record_id:
            payload = self._request("PUT", f"/{kind}s/{record_id}", json=record)
        else:
            payload = self._request("POST", f"/{kind}s", json=record)
        return payload or {}

    def add_tags(self, contact_id: str, tags: list[str]) -> None:
        if tags:
            self._request("POST", f"/contacts/{contact_id}/tags", json={"tags": tags})

    def add_note(self, contact_id: str, body: str) -> None:
        self._request("POST", f"/contacts/{contact_id}/notes", json={"body": body})

    def add_to_list(self, list_name: str, contact_id: str) -> None:
        self._request("POST", "/lists/members", json={"list": list_name, "contact_id": contact_id})

    def send(self, message: dict[str, Any]) -> str:
        payload = self._request("POST", "/messages", json=message) or {}
        return str(payload.get("id") or payload.get("messageId") or "")

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        def attempt() -> dict[str, Any] | None:
            return self._breaker.call(
                lambda: self._send_once(method, path, params=params, json=json, allow_not_found=allow_not_found)
            )

        try:
            result = execute_with_retry(attempt, policy=self._policy, sleep=self._sleep)
        except CircuitOpenError:
            observe_external_call(service=self.service, outcome="circuit_open")
            raise
        except Exception:
            observe_external_call(service=self.service, outcome="error")
            raise
        observe_external_call(service=self.service, outcome="ok")
        return result

    def _send_once(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
        allow_not_found: bool,
    ) -> dict[str, Any] | None:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        try:
            res = self._http.request(method, self._base_url + path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(service=self.service, message=f"timeout: {e}", transient=True) from e
        except httpx.TransportError as e:
            raise ExternalServiceError(service=self.service, message=f"network: {e}", transient=True) from e

        if res.status_code == 404 and allow_not_found:
            return None
        if res.status_code >= 400:
            raise ExternalServiceError(
                service=self.service,
                status_code=res.status_code,
                message=f"HTTP {res.status_code} {method} {path}",
                transient=res.status_code == 429 or res.status_code >= 500,
            )
        if not res.content:
            return {}
        payload = res.json()
        return payload if isinstance(payload, dict) else {"items": payload}
