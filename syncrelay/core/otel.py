from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from threading import Lock
from typing import Any

from fastapi import FastAPI

from syncrelay.core.config import Settings
from syncrelay.db.session import get_engine

logger = logging.getLogger("syncrelay.api")


@dataclass(frozen=True)
class OTelSetupResult:
    enabled: bool
    reason: str
    shutdown: Callable[[], None] | None = None


_PROVIDER: Any | None = None
_LOCK = Lock()
_INSTRUMENTED: set[str] = set()


def _disabled_reason(settings: Settings) -> str | None:
    if not settings.ENABLE_OTEL_TRACING:
        return "disabled"
    if not settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT.strip():
        logger.warning("OpenTelemetry tracing is enabled but OTEL_EXPORTER_OTLP_TRACES_ENDPOINT is empty.")
        return "missing_endpoint"
    return None


def setup_otel(*, app: FastAPI, settings: Settings) -> OTelSetupResult:
    """Trace inbound requests plus the database and outbound HTTP calls they make."""
    reason = _disabled_reason(settings)
    if reason is not None:
        return OTelSetupResult(enabled=False, reason=reason)

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        provider = _tracer_provider(settings)
        _instrument_dependencies(provider)
    except ImportError as exc:
        logger.warning("OpenTelemetry tracing setup skipped: %s", exc)
        return OTelSetupResult(enabled=False, reason="dependency_missing")

    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=settings.OTEL_EXCLUDED_URLS)
    logger.info(
        "OpenTelemetry tracing enabled for service=%s component=api endpoint=%s",
        settings.OTEL_SERVICE_NAME,
        settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT,
    )

    def _shutdown() -> None:
        with suppress(Exception):
            FastAPIInstrumentor.uninstrument_app(app)

    return OTelSetupResult(enabled=True, reason="enabled", shutdown=_shutdown)


def setup_worker_tracing(*, settings: Settings) -> OTelSetupResult:
    reason = _disabled_reason(settings)
    if reason is not None:
        return OTelSetupResult(enabled=False, reason=reason)

    try:
        provider = _tracer_provider(settings)
        _instrument_dependencies(provider)
    except ImportError as exc:
        logger.warning("OpenTelemetry tracing setup skipped: %s", exc)
        return OTelSetupResult(enabled=False, reason="dependency_missing")

    logger.info("OpenTelemetry tracing enabled for service=%s component=worker", settings.OTEL_SERVICE_NAME)

    def _shutdown() -> None:
        with suppress(Exception):
            provider.shutdown()

    return OTelSetupResult(enabled=True, reason="enabled", shutdown=_shutdown)


@contextmanager
def job_span(job_type: str, **attributes: Any) -> Iterator[None]:
    """Wrap one queue job in a span; a no-op until a tracer provider exists."""
    if _PROVIDER is None:
        yield
        return

    from opentelemetry import trace

    tracer = trace.get_tracer("syncrelay.worker")
    span_attributes = {f"syncrelay.{k}": str(v) for k, v in attributes.items() if v is not None}
    with tracer.start_as_current_span(f"job.{job_type}", attributes=span_attributes):
        yield


def _tracer_provider(settings: Settings) -> Any:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

    global _PROVIDER
    with _LOCK:
        if _PROVIDER is not None:
            return _PROVIDER

        provider = TracerProvider(
            resource=Resource.create(
                {SERVICE_NAME: settings.OTEL_SERVICE_NAME, SERVICE_VERSION: settings.VERSION}
            ),
            sampler=TraceIdRatioBased(settings.OTEL_TRACE_SAMPLE_RATIO),
        )
        headers = _parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS)
        exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT,
            **({"headers": headers} if headers else {}),
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        _PROVIDER = provider
        return provider


def _instrument_dependencies(provider: Any) -> None:
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    with _LOCK:
        if "sqlalchemy" not in _INSTRUMENTED:
            SQLAlchemyInstrumentor().instrument(engine=get_engine(), tracer_provider=provider)
            _INSTRUMENTED.add("sqlalchemy")
        # Covers the CRM, telephony and messaging clients and the alert webhook.
        if "httpx" not in _INSTRUMENTED:
            HTTPXClientInstrumentor().instrument(tracer_provider=provider)
            _INSTRUMENTED.add("httpx")


def _parse_otlp_headers(raw_headers: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for token in raw_headers.split(","):
        piece = token.strip()
        if not piece:
            continue
        key, sep, value = piece.partition("=")
        if not sep or not key.strip() or not value.strip():
            logger.warning("Ignoring malformed OTLP header token: %s", piece)
            continue
        out[key.strip()] = value.strip()
    return out
