"""Public blog endpoints: listings, single posts, search, topics, newsletter."""

import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query

from blogapi.dependencies import get_current_user, get_storage
from blogapi.models.post import CATEGORIES, CategoryCount, Pagination, Post, PostPage
from blogapi.models.subscriber import InsertSubscriber
from blogapi.models.user import User
from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import ConflictError

router = APIRouter(tags=["posts"])
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def build_page(posts: list[Post], page: int, limit: int, total: int) -> PostPage:
    return PostPage(
        posts=posts,
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        ),
    )


@router.get("/posts", response_model=PostPage)
async def list_posts(
    page: int = Query(default=1, ge=1, description="1-based page number"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    category: str | None = Query(default=None, description="Filter by category"),
    storage: Storage = Depends(get_storage),
):
    """Published posts, newest first, optionally filtered by category."""
    offset = (page - 1) * limit
    if category:
        posts = await storage.get_posts_by_category(
            category, status="published", limit=limit, offset=offset
        )
    else:
        posts = await storage.get_all_posts(status="published", limit=limit, offset=offset)
    total = await storage.get_post_count(status="published", category=category)
    return build_page(posts, page, limit, total)


@router.get("/posts/{slug}", response_model=Post)
async def get_post(
    slug: str,
    storage: Storage = Depends(get_storage),
    user: User | None = Depends(get_current_user),
):
    """A single post. Drafts are visible to admins only."""
    post = await storage.get_post_by_slug(slug)
    if post is None:
        raise HTTPException(status_code=404, detail="Post not found")
    if post.status != "published" and not (user and user.is_admin):
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.get("/featured-post", response_model=Post)
async def featured_post(storage: Storage = Depends(get_storage)):
    post = await storage.get_featured_post()
    if post is None:
        raise HTTPException(status_code=404, detail="No featured post found")
    return post


@router.get("/popular-posts", response_model=list[Post])
async def popular_posts(
    limit: int = Query(default=5, ge=1, le=50),
    storage: Storage = Depends(get_storage),
):
    return await storage.get_popular_posts(limit)


@router.get("/search", response_model=list[Post])
async def search_posts(
    query: str = Query(..., min_length=2, max_length=50),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    storage: Storage = Depends(get_storage),
):
    """Published posts containing ``query`` in title, excerpt or content."""
    query = query.strip()
    if len(query) < 2:
        raise HTTPException(status_code=400, detail="Invalid search query")
    return await storage.search_posts(
        query, status="published", limit=limit, offset=(page - 1) * limit
    )


@router.get("/categories", response_model=list[CategoryCount])
async def list_categories(storage: Storage = Depends(get_storage)):
    """Editorial categories with their published post counts."""
    return [
        CategoryCount(
            name=name,
            count=await storage.get_post_count(status="published", category=name),
        )
        for name in CATEGORIES
    ]


@router.post("/subscribe", status_code=201)
async def subscribe(
    submission: InsertSubscriber,
    storage: Storage = Depends(get_storage),
):
    """Newsletter signup. A known email is rejected with 400."""
    if await storage.get_subscriber_by_email(submission.email):
        raise HTTPException(status_code=400, detail="Email already subscribed")
    try:
        await storage.create_subscriber(submission)
    except ConflictError:
        # Lost the race against a concurrent signup for the same address
        raise HTTPException(status_code=400, detail="Email already subscribed")
    logger.info("New newsletter subscriber")
    return {"message": "Successfully subscribed"}
