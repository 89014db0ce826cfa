from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from syncrelay.core.config import Settings, get_settings
from syncrelay.db.session import get_session

router = APIRouter(tags=["health"])

# Tables the webhook and worker paths cannot run without.
_REQUIRED_TABLES = ("webhook_events", "bg_jobs", "sync_log")


@router.get("/healthz")
def healthz(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "version": settings.VERSION}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict[str, str]:
    try:
        missing = [
            name
            for name in _REQUIRED_TABLES
            if session.execute(text("SELECT to_regclass(:name)"), {"name": f"public.{name}"}).scalar() is None
        ]
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not ready",
        ) from e
    if missing:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"schema not migrated: missing {', '.join(missing)}",
        )
    return {"status": "ready"}
