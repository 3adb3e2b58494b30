"""Blog post data models."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from blogapi.models.base import CamelModel

PostStatus = Literal["draft", "published"]

# Editorial categories by convention; the storage layer does not enforce them.
CATEGORIES = [
    "Career Development",
    "Web Development",
    "Machine Learning",
    "Data Science",
    "Cloud Computing",
    "Tech News",
]

SLUG_PATTERN = r"^[\w-]+$"


class Post(CamelModel):
    """A stored article."""

    id: int
    title: str
    slug: str
    excerpt: str
    content: str
    featured_image: str | None = None
    category: str
    status: PostStatus = "draft"
    read_time: int | None = None
    author_id: int | None = None
    created_at: datetime
    updated_at: datetime
    published_at: datetime | None = None


class InsertPost(CamelModel):
    """Payload for creating a post.

    ``slug`` is derived from the title when omitted. ``publish_now`` marks
    the post published and stamps ``published_at``.
    """

    title: str = Field(..., min_length=1, max_length=200)
    slug: str | None = Field(None, min_length=1, max_length=220, pattern=SLUG_PATTERN)
    excerpt: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1)
    featured_image: str | None = None
    author_id: int | None = None
    category: str = Field(..., min_length=1, max_length=50)
    status: PostStatus = "draft"
    read_time: int | None = Field(None, ge=1, le=600)
    publish_now: bool = False


class UpdatePost(CamelModel):
    """Partial post update; only fields that were set are applied."""

    title: str | None = Field(None, min_length=1, max_length=200)
    slug: str | None = Field(None, min_length=1, max_length=220, pattern=SLUG_PATTERN)
    excerpt: str | None = Field(None, min_length=1, max_length=500)
    content: str | None = Field(None, min_length=1)
    featured_image: str | None = None
    category: str | None = Field(None, min_length=1, max_length=50)
    status: PostStatus | None = None
    read_time: int | None = Field(None, ge=1, le=600)
    publish_now: bool = False


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PostPage(CamelModel):
    """Paginated post listing."""

    posts: list[Post]
    pagination: Pagination


class CategoryCount(CamelModel):
    name: str
    count: int


class DashboardStats(CamelModel):
    posts: int
    published_posts: int
    draft_posts: int
    subscribers: int
