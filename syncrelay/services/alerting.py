from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.config import Settings
from syncrelay.core.logs import log_event

logger = logging.getLogger("syncrelay.worker")


class AlertLevel(enum.StrEnum):
    warning = "warning"
    critical = "critical"


@dataclass(frozen=True)
class AlertSnapshot:
    window_seconds: int
    webhooks_received: int
    webhook_errors: int
    sync_operations: int
    sync_errors: int
    pending_depth: int
    api_errors: int

    @property
    def webhook_error_rate(self) -> float:
        return _rate(self.webhook_errors, self.webhooks_received)

    @property
    def sync_error_rate(self) -> float:
        return _rate(self.sync_errors, self.sync_operations)


@dataclass(frozen=True)
class Threshold:
    warning: float
    critical: float


@dataclass(frozen=True)
class AlertThresholds:
    webhook_error_rate: Threshold = Threshold(1.0, 5.0)
    sync_error_rate: Threshold = Threshold(1.0, 5.0)
    pending_depth: Threshold = Threshold(500, 1000)
    api_errors: Threshold = Threshold(5, 10)

    @classmethod
    def from_settings(cls, settings: Settings) -> AlertThresholds:
        return cls(
            webhook_error_rate=Threshold(
                settings.ALERT_WEBHOOK_ERROR_RATE_WARNING, settings.ALERT_WEBHOOK_ERROR_RATE_CRITICAL
            ),
            sync_error_rate=Threshold(settings.ALERT_SYNC_ERROR_RATE_WARNING, settings.ALERT_SYNC_ERROR_RATE_CRITICAL),
            pending_depth=Threshold(settings.ALERT_PENDING_DEPTH_WARNING, settings.ALERT_PENDING_DEPTH_CRITICAL),
            api_errors=Threshold(settings.ALERT_API_ERRORS_WARNING, settings.ALERT_API_ERRORS_CRITICAL),
        )


@dataclass(frozen=True)
class Alert:
    level: AlertLevel
    metric: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["level"] = self.level.value
        payload["timestamp"] = datetime.now(UTC).isoformat()
        return payload


def _rate(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100.0, 2)


def collect_alert_snapshot(session: Session, *, window_seconds: int) -> AlertSnapshot:
    params = {"window": str(max(1, window_seconds))}
    events = (
        session.execute(
            text(
                """
                SELECT
                  count(*) AS received,
                  count(*) FILTER (WHERE status = 'error') AS errors
                FROM webhook_events
                WHERE received_at >= now() - (:window || ' seconds')::interval
                """
            ),
            params,
        )
        .mappings()
        .one()
    )
    syncs = (
        session.execute(
            text(
                """
                SELECT
                  count(*) AS total,
                  count(*) FILTER (WHERE status = 'error') AS errors,
                  count(*) FILTER (
                    WHERE status = 'error'
                      AND (error_message ILIKE '%api error%' OR error_message ILIKE 'circuit open%')
                  ) AS api_errors
                FROM sync_log
                WHERE started_at >= now() - (:window || ' seconds')::interval
                """
            ),
            params,
        )
        .mappings()
        .one()
    )
    pending = session.execute(text("SELECT count(*) FROM webhook_events WHERE status = 'pending'")).scalar_one()
    return AlertSnapshot(
        window_seconds=window_seconds,
        webhooks_received=int(events["received"]),
        webhook_errors=int(events["errors"]),
        sync_operations=int(syncs["total"]),
        sync_errors=int(syncs["errors"]),
        pending_depth=int(pending),
        api_errors=int(syncs["api_errors"]),
    )


def _check(
    *,
    metric: str,
    value: float,
    threshold: Threshold,
    title: str,
    unit: str,
    metadata: dict[str, Any],
) -> Alert | None:
    if value >= threshold.critical:
        level, limit = AlertLevel.critical, threshold.critical
    elif value >= threshold.warning:
        level, limit = AlertLevel.warning, threshold.warning
    else:
        return None
    return Alert(
        level=level,
        metric=metric,
        title=title,
        message=f"{metric} is {value:g}{unit} (threshold {limit:g}{unit})",
        metadata={"value": value, "threshold": limit, **metadata},
    )


def evaluate_alerts(snapshot: AlertSnapshot, thresholds: AlertThresholds) -> list[Alert]:
    window = {"window_seconds": snapshot.window_seconds}
    checks = (
        _check(
            metric="webhook_error_rate",
            value=snapshot.webhook_error_rate,
            threshold=thresholds.webhook_error_rate,
            title="Webhook error rate elevated",
            unit="%",
            metadata={**window, "received": snapshot.webhooks_received, "errors": snapshot.webhook_errors},
        ),
        _check(
            metric="sync_error_rate",
            value=snapshot.sync_error_rate,
            threshold=thresholds.sync_error_rate,
            title="Sync error rate elevated",
            unit="%",
            metadata={**window, "operations": snapshot.sync_operations, "errors": snapshot.sync_errors},
        ),
        _check(
            metric="pending_depth",
            value=snapshot.pending_depth,
            threshold=thresholds.pending_depth,
            title="Pending event backlog",
            unit="",
            metadata={},
        ),
        _check(
            metric="api_errors",
            value=snapshot.api_errors,
            threshold=thresholds.api_errors,
            title="External API errors",
            unit="",
            metadata=window,
        ),
    )
    return [a for a in checks if a is not None]


def send_alerts(*, client: httpx.Client, url: str, alerts: Sequence[Alert]) -> int:
    """POST each alert to the configured webhook. Failures are logged and not retried."""
    if not alerts:
        return 0
    if not url:
        log_event(
            logger,
            "alert.webhook_not_configured",
            level=logging.WARNING,
            alerts=[f"{a.level.value}:{a.metric}" for a in alerts],
        )
        return 0

    sent = 0
    for alert in alerts:
        try:
            resp = client.post(url, json=alert.to_payload())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log_event(
                logger,
                "alert.send_failed",
                level=logging.ERROR,
                metric=alert.metric,
                alert_level=alert.level.value,
                error=str(e),
            )
            continue
        sent += 1
        log_event(logger, "alert.sent", metric=alert.metric, alert_level=alert.level.value)
    return sent


def run_alert_check(*, session: Session, settings: Settings, client: httpx.Client) -> list[Alert]:
    snapshot = collect_alert_snapshot(session, window_seconds=settings.ALERT_WINDOW_SECONDS)
    alerts = evaluate_alerts(snapshot, AlertThresholds.from_settings(settings))
    send_alerts(client=client, url=settings.ALERT_WEBHOOK_URL, alerts=alerts)
    return alerts
