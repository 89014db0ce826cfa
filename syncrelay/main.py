from __future__ import annotations

from fastapi import FastAPI

from syncrelay.core.config import get_settings
from syncrelay.core.metrics import metrics_response
from syncrelay.core.middleware import install_request_middleware
from syncrelay.core.otel import setup_otel
from syncrelay.routers.health import router as health_router
from syncrelay.routers.ops import router as ops_router
from syncrelay.routers.webhooks import router as webhooks_router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="SyncRelay", version=settings.VERSION)

    install_request_middleware(app, settings=settings)

    if settings.ENABLE_PROMETHEUS_METRICS:
        app.add_api_route(
            settings.PROMETHEUS_METRICS_PATH,
            metrics_response,
            methods=["GET"],
            include_in_schema=False,
        )

    otel = setup_otel(app=app, settings=settings)
    app.state.otel_tracing_enabled = otel.enabled
    app.state.otel_tracing_reason = otel.reason
    if otel.shutdown is not None:
        app.add_event_handler("shutdown", otel.shutdown)

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(ops_router)
    return app


app = create_app()
