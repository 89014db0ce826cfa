from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.orm import Session

from syncrelay.core.logs import log_event
from syncrelay.core.metrics import observe_sync_operation
from syncrelay.models.enums import SyncStatus

logger = logging.getLogger("syncrelay.worker")

_MAX_ERROR_LEN = 2000


@dataclass
class SyncAttempt:
    direction: str
    entity_type: str
    entity_id: str
    source_id: str
    correlation_id: str
    target_id: str | None = None
    status: SyncStatus = SyncStatus.success
    message: str | None = None

    def skip(self, reason: str) -> None:
        self.status = SyncStatus.skipped
        self.message = reason


@contextmanager
def sync_attempt(
    session: Session,
    *,
    direction: str,
    entity_type: str,
    entity_id: str,
    source_id: str,
    correlation_id: str,
) -> Iterator[SyncAttempt]:
    """Record exactly one sync_log row for the wrapped synchronizer invocation.

    Success and skipped rows are flushed into the caller's transaction. On error
    the caller's work is rolled back, the error row is committed on its own and
    the exception propagates.
    """
    started_at = datetime.now(UTC)
    attempt = SyncAttempt(
        direction=direction,
        entity_type=entity_type,
        entity_id=entity_id,
        source_id=source_id,
        correlation_id=correlation_id,
    )
    try:
        yield attempt
    except Exception as e:
        session.rollback()
        _insert_row(
            session,
            attempt=attempt,
            status=SyncStatus.error,
            error_message=str(e)[:_MAX_ERROR_LEN] or e.__class__.__name__,
            started_at=started_at,
        )
        session.commit()
        _observe(attempt, SyncStatus.error, str(e))
        raise

    _insert_row(
        session,
        attempt=attempt,
        status=attempt.status,
        error_message=attempt.message,
        started_at=started_at,
    )
    session.flush()
    _observe(attempt, attempt.status, attempt.message)


def _insert_row(
    session: Session,
    *,
    attempt: SyncAttempt,
    status: SyncStatus,
    error_message: str | None,
    started_at: datetime,
) -> None:
    session.execute(
        text(
            """
            INSERT INTO sync_log (
              direction,
              entity_type,
              entity_id,
              source_id,
              target_id,
              status,
              error_message,
              correlation_id,
              started_at,
              finished_at
            )
            VALUES (
              :direction,
              :entity_type,
              :entity_id,
              :source_id,
              :target_id,
              :status,
              :error_message,
              :correlation_id,
              :started_at,
              now()
            )
            """
        ),
        {
            "direction": attempt.direction,
            "entity_type": attempt.entity_type,
            "entity_id": attempt.entity_id,
            "source_id": attempt.source_id,
            "target_id": attempt.target_id,
            "status": status.value,
            "error_message": error_message,
            "correlation_id": attempt.correlation_id,
            "started_at": started_at,
        },
    )


def _observe(attempt: SyncAttempt, status: SyncStatus, message: str | None) -> None:
    observe_sync_operation(direction=attempt.direction, entity_type=attempt.entity_type, status=status.value)
    log_event(
        logger,
        "sync.completed",
        level=logging.ERROR if status == SyncStatus.error else logging.INFO,
        direction=attempt.direction,
        entity_type=attempt.entity_type,
        entity_id=attempt.entity_id,
        target_id=attempt.target_id,
        status=status.value,
        message=message,
        correlation_id=attempt.correlation_id,
    )
