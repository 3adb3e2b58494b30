"""FastAPI dependencies: storage handles and the session-cookie user gate."""

import logging

from fastapi import Depends, HTTPException, Request

from blogapi.config import get_settings
from blogapi.models.user import User
from blogapi.services.storage.base import Storage
from blogapi.services.storage.sessions import SessionStore
from blogapi.services.storage.supervisor import HealthSupervisor

logger = logging.getLogger(__name__)


def get_supervisor(request: Request) -> HealthSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=503, detail="Storage is not initialised")
    return supervisor


def get_storage(supervisor: HealthSupervisor = Depends(get_supervisor)) -> Storage:
    """The supervised storage facade; always routes to the active backend."""
    return supervisor.storage


def get_sessions(supervisor: HealthSupervisor = Depends(get_supervisor)) -> SessionStore:
    return supervisor.sessions


async def get_current_user(
    request: Request,
    storage: Storage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
) -> User | None:
    """Resolve the signed-in user from the session cookie, or None."""
    sid = request.cookies.get(get_settings().session_cookie_name)
    if not sid:
        return None
    session = await sessions.get(sid)
    if not session or "userId" not in session:
        return None
    user = await storage.get_user(session["userId"])
    if user is None:
        # Session outlived its user (e.g. after a fallback to fresh storage)
        logger.info("Dropping session for unknown user %s", session["userId"])
        await sessions.destroy(sid)
    return user


async def require_user(user: User | None = Depends(get_current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


async def require_admin(user: User = Depends(require_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
