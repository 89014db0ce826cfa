from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from syncrelay.core.errors import is_permanent
from syncrelay.models.enums import JobType
from syncrelay.services.alerting import run_alert_check
from syncrelay.worker.errors import PermanentJobError
from syncrelay.worker.process import process_event
from syncrelay.worker.reconcile import reconcile_contacts
from syncrelay.worker.runtime import WorkerRuntime
from syncrelay.worker.sweep import sweep_pending


def handle_job(
    *,
    session: Session,
    job_id: UUID,
    job_type: JobType,
    payload: dict,
    runtime: WorkerRuntime,
    attempts: int = 0,
) -> None:
    _ = job_id
    if job_type == JobType.process_event:
        event_id_raw = payload.get("event_id")
        if not event_id_raw:
            raise PermanentJobError("process_event job without event_id")
        try:
            process_event(
                session=session,
                event_id=UUID(str(event_id_raw)),
                runtime=runtime,
                allow_retry=attempts > 0,
            )
        except Exception as e:
            if is_permanent(e):
                raise PermanentJobError(str(e)) from e
            raise
        return
    if job_type == JobType.sweep_pending:
        sweep_pending(session=session, runtime=runtime)
        return
    if job_type == JobType.alert_check:
        run_alert_check(session=session, settings=runtime.settings, client=runtime.http)
        return
    if job_type == JobType.reconcile_contacts:
        reconcile_contacts(session=session, runtime=runtime)
        return

    raise NotImplementedError(f"Job type not implemented: {job_type.value}")
