from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class DlqJobItem(BaseModel):
    id: UUID
    event_id: UUID | None
    type: str
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    run_at: datetime
    updated_at: datetime
    payload: dict[str, Any]


class DlqJobsResponse(BaseModel):
    items: list[DlqJobItem]


class DlqReplayResponse(BaseModel):
    status: str
    job_id: UUID


class OpsEventItem(BaseModel):
    id: UUID
    source: str
    event_type: str
    entity_type: str
    entity_id: str | None
    status: str
    error_message: str | None
    received_at: datetime
    processed_at: datetime | None
    quarantined: bool


class OpsEventsResponse(BaseModel):
    items: list[OpsEventItem]


class EventReplayResponse(BaseModel):
    status: str
    event_id: UUID
    job_id: UUID | None


class QuarantineRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class QuarantineResponse(BaseModel):
    status: str
    event_id: UUID


class OpsMetricsOverviewResponse(BaseModel):
    events_by_status: dict[str, int]
    queued_jobs: int
    running_jobs: int
    failed_jobs_24h: int
    sync_errors_24h: int
    quarantined_events: int
    opted_out_numbers: int
    oldest_pending_age_seconds: int | None


class AlertItem(BaseModel):
    level: str
    metric: str
    title: str
    message: str
    metadata: dict[str, Any]


class AlertCheckResponse(BaseModel):
    alerts: list[AlertItem]
