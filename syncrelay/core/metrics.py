from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

_HTTP_REQUESTS_TOTAL = Counter(
    "syncrelay_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "syncrelay_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "syncrelay_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("method", "path"),
)
_WEBHOOKS_TOTAL = Counter(
    "syncrelay_webhooks_total",
    "Inbound webhooks by source and ingestion outcome.",
    labelnames=("source", "outcome"),
)
_EVENTS_PROCESSED_TOTAL = Counter(
    "syncrelay_events_processed_total",
    "Events processed by the worker, by final status.",
    labelnames=("source", "status"),
)
_SYNC_OPERATIONS_TOTAL = Counter(
    "syncrelay_sync_operations_total",
    "Synchronizer invocations by direction, entity type and outcome.",
    labelnames=("direction", "entity_type", "status"),
)
_EXTERNAL_CALLS_TOTAL = Counter(
    "syncrelay_external_calls_total",
    "Outbound calls to external systems by service and outcome.",
    labelnames=("service", "outcome"),
)
_CIRCUIT_STATE = Gauge(
    "syncrelay_circuit_state",
    "Circuit breaker state per service (0=closed, 1=half_open, 2=open).",
    labelnames=("service",),
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )
    if rate_limited:
        _HTTP_RATE_LIMITED_TOTAL.labels(method=safe_method, path=safe_path).inc()


def observe_webhook(*, source: str, outcome: str) -> None:
    _WEBHOOKS_TOTAL.labels(source=source, outcome=outcome).inc()


def observe_event_processed(*, source: str, status: str) -> None:
    _EVENTS_PROCESSED_TOTAL.labels(source=source, status=status).inc()


def observe_sync_operation(*, direction: str, entity_type: str, status: str) -> None:
    _SYNC_OPERATIONS_TOTAL.labels(direction=direction, entity_type=entity_type, status=status).inc()


def observe_external_call(*, service: str, outcome: str) -> None:
    _EXTERNAL_CALLS_TOTAL.labels(service=service, outcome=outcome).inc()


def set_circuit_state(*, service: str, state: str) -> None:
    _CIRCUIT_STATE.labels(service=service).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
