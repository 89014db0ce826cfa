from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from syncrelay.models.base import Base
from syncrelay.models.enums import JobStatus, JobType


class BgJob(Base):
    """One unit of queued work: process an event, sweep, alert check or reconcile.

    Periodic jobs carry no event_id and dedupe on their type; event jobs dedupe
    on "process_event:<event id>". Only one queued or running job may hold a
    given (type, dedupe_key). `updated_at` is maintained by trigger and left unmapped.
    """

    __tablename__ = "bg_jobs"
    __table_args__ = (
        Index("bg_jobs_runner_idx", "status", "run_at"),
        Index("bg_jobs_event_idx", "event_id"),
        Index(
            "bg_jobs_dedupe_uq",
            "type",
            "dedupe_key",
            unique=True,
            postgresql_where=text("dedupe_key IS NOT NULL AND status IN ('queued','running')"),
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    event_id: Mapped[UUID | None] = mapped_column(ForeignKey("webhook_events.id", ondelete="CASCADE"))
    type: Mapped[JobType] = mapped_column(Enum(JobType, name="job_type", create_type=False))
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_type=False), server_default=text("'queued'")
    )

    # Retry bookkeeping; run_at moves forward by exponential backoff on each transient failure.
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"))
    attempts: Mapped[int] = mapped_column(Integer, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, server_default=text("10"))
    last_error: Mapped[str | None] = mapped_column(Text)

    # Set while a worker holds the job; the sweep requeues rows locked for too long.
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[str | None] = mapped_column(Text)

    dedupe_key: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSONB, server_default=text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"))
