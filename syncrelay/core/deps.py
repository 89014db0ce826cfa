from __future__ import annotations

from fastapi import HTTPException, Request, status

from syncrelay.core.config import get_settings
from syncrelay.core.security import verify_shared_secret


def require_admin(request: Request) -> str:
    settings = get_settings()
    provided = request.headers.get(settings.ADMIN_SECRET_HEADER)
    if not verify_shared_secret(provided=provided, expected=settings.ADMIN_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin secret")
    # Operator label recorded on quarantine entries.
    return request.headers.get("x-operator") or "admin"
