"""FastAPI authentication dependencies for session-cookie callers."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from jerkyrank.auth.sessions import SessionUser
from jerkyrank.dependencies import get_services
from jerkyrank.services import Services

SESSION_HEADER = "X-Session-Id"
SESSION_COOKIE = "session_id"


async def get_current_user(
    request: Request,
    services: Services = Depends(get_services),  # noqa: B008
) -> SessionUser:
    """Resolve the caller from the session header or cookie. Raises 401."""
    session_id = request.headers.get(SESSION_HEADER) or request.cookies.get(SESSION_COOKIE)
    if not session_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = await services.authenticator(session_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user


async def require_admin(user: SessionUser = Depends(get_current_user)) -> SessionUser:  # noqa: B008
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def require_super_admin(user: SessionUser = Depends(get_current_user)) -> SessionUser:  # noqa: B008
    if not user.is_super_admin:
        raise HTTPException(status_code=403, detail="Super admin access required")
    return user
