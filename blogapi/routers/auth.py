"""Session-cookie login for the admin area."""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from blogapi.config import get_settings
from blogapi.dependencies import get_sessions, get_storage, require_user
from blogapi.models.user import (
    LoginRequest,
    PublicUser,
    UpdateProfileRequest,
    UpdateUser,
    User,
)
from blogapi.services.passwords import hash_password, verify_password
from blogapi.services.storage.base import Storage
from blogapi.services.storage.sessions import SessionStore

router = APIRouter(tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/login", response_model=PublicUser)
async def login(
    credentials: LoginRequest,
    response: Response,
    storage: Storage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
):
    user = await storage.get_user_by_username(credentials.username)
    if user is None or not verify_password(credentials.password, user.password):
        logger.warning("Failed login for %s", credentials.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    settings = get_settings()
    sid = secrets.token_urlsafe(32)
    await sessions.set(sid, {"userId": user.id})
    response.set_cookie(
        settings.session_cookie_name,
        sid,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.environment == "production",
    )
    logger.info("User %s logged in", user.username)
    return user


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    sessions: SessionStore = Depends(get_sessions),
):
    settings = get_settings()
    sid = request.cookies.get(settings.session_cookie_name)
    if sid:
        await sessions.destroy(sid)
    response.delete_cookie(settings.session_cookie_name)
    return {"message": "Logged out"}


@router.get("/user", response_model=PublicUser)
async def current_user(user: User = Depends(require_user)):
    return user


@router.patch("/user", response_model=PublicUser)
async def update_profile(
    payload: UpdateProfileRequest,
    user: User = Depends(require_user),
    storage: Storage = Depends(get_storage),
):
    """Update display name, profile image or password of the signed-in user."""
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("password"):
        changes["password"] = hash_password(changes["password"])
    updated = await storage.update_user(user.id, UpdateUser(**changes))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return updated
