"""Admin endpoints: post management, subscribers, dashboard and storage status."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from blogapi.dependencies import get_storage, get_supervisor, require_admin
from blogapi.models.post import DashboardStats, InsertPost, Post, PostPage, PostStatus, UpdatePost
from blogapi.models.subscriber import Subscriber
from blogapi.models.system import SystemStatus
from blogapi.models.user import InsertUser, PublicUser, RegisterUserRequest, User
from blogapi.routers.posts import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, build_page
from blogapi.services.passwords import hash_password
from blogapi.services.storage.base import Storage
from blogapi.services.storage.supervisor import HealthSupervisor

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/posts", response_model=PostPage)
async def list_posts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    status: PostStatus | None = Query(default=None),
    storage: Storage = Depends(get_storage),
):
    """All posts including drafts, optionally filtered by status."""
    posts = await storage.get_all_posts(status=status, limit=limit, offset=(page - 1) * limit)
    total = await storage.get_post_count(status=status)
    return build_page(posts, page, limit, total)


@router.post("/posts", response_model=Post, status_code=201)
async def create_post(
    payload: InsertPost,
    storage: Storage = Depends(get_storage),
    user: User = Depends(require_admin),
):
    post = await storage.create_post(payload.model_copy(update={"author_id": user.id}))
    logger.info("Post %d created by %s: %s", post.id, user.username, post.slug)
    return post


@router.get("/posts/{post_id}", response_model=Post)
async def get_post(post_id: int, storage: Storage = Depends(get_storage)):
    post = await storage.get_post(post_id)
    if post is None:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.put("/posts/{post_id}", response_model=Post)
async def update_post(
    post_id: int,
    payload: UpdatePost,
    storage: Storage = Depends(get_storage),
):
    """Partial update; a title change without a slug regenerates the slug."""
    post = await storage.update_post(post_id, payload)
    if post is None:
        raise HTTPException(status_code=404, detail="Post not found")
    logger.info("Post %d updated", post_id)
    return post


@router.delete("/posts/{post_id}", status_code=204)
async def delete_post(post_id: int, storage: Storage = Depends(get_storage)):
    if not await storage.delete_post(post_id):
        raise HTTPException(status_code=404, detail="Post not found")
    logger.info("Post %d deleted", post_id)
    return Response(status_code=204)


@router.get("/subscribers", response_model=list[Subscriber])
async def list_subscribers(storage: Storage = Depends(get_storage)):
    return await storage.get_all_subscribers()


@router.get("/stats", response_model=DashboardStats)
async def dashboard_stats(storage: Storage = Depends(get_storage)):
    subscribers = await storage.get_all_subscribers()
    return DashboardStats(
        posts=await storage.get_post_count(),
        published_posts=await storage.get_post_count(status="published"),
        draft_posts=await storage.get_post_count(status="draft"),
        subscribers=len(subscribers),
    )


@router.post("/users", response_model=PublicUser, status_code=201)
async def register_user(payload: RegisterUserRequest, storage: Storage = Depends(get_storage)):
    """Create another account. A taken username is rejected with 400."""
    user = await storage.create_user(
        InsertUser(
            username=payload.username,
            password=hash_password(payload.password),
            display_name=payload.display_name,
            profile_image=payload.profile_image,
            is_admin=payload.is_admin,
        )
    )
    logger.info("Registered user %s (admin=%s)", user.username, user.is_admin)
    return user


@router.get("/system/status", response_model=SystemStatus)
async def system_status(supervisor: HealthSupervisor = Depends(get_supervisor)):
    """Active backend, connection state, uptime and memory usage."""
    return supervisor.status()


@router.post("/system/reconnect", response_model=SystemStatus)
async def reconnect(supervisor: HealthSupervisor = Depends(get_supervisor)):
    """Re-probe the configured primary and switch back to it on success."""
    if not await supervisor.reconnect():
        raise HTTPException(status_code=503, detail="Primary storage is still unavailable")
    return supervisor.status()
