"""Backend-independent post rules: slugs, filters, ordering, field updates.

Every backend builds its list and count queries from the same
``PostFilter`` and applies creates/updates through ``new_post_fields`` and
``post_update_fields`` so the three implementations cannot drift apart.
"""

import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from blogapi.models.post import InsertPost, Post, UpdatePost

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^\w-]+", re.ASCII)
_MULTI_HYPHEN_RE = re.compile(r"-{2,}")

# Oldest representable instant, used as the sort value for a missing date.
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Fields that may not be cleared by a partial update.
_REQUIRED_FIELDS = {"title", "excerpt", "content", "category", "status"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes coming back from a driver as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def slugify(text: str) -> str:
    """Derive a URL-safe slug: lower-case, hyphenate whitespace, drop non-word chars."""
    slug = _WHITESPACE_RE.sub("-", text.strip().lower())
    slug = _NON_WORD_RE.sub("", slug)
    slug = _MULTI_HYPHEN_RE.sub("-", slug).strip("-")
    return slug or "post"


async def unique_slug(base: str, exists: Callable[[str], Awaitable[bool]]) -> str:
    """Return ``base``, or ``base-1``, ``base-2``... whichever is free first.

    This is check-then-act: two concurrent callers can both receive the same
    candidate. Backends with a unique index catch the violation and call
    this again.
    """
    candidate = base
    suffix = 0
    while await exists(candidate):
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


@dataclass(frozen=True)
class PostFilter:
    """Filters shared by the list, search and count operations."""

    status: str | None = None
    category: str | None = None
    query: str | None = None

    @property
    def search_term(self) -> str | None:
        return self.query.lower() if self.query else None


def matches_filter(post: Post, flt: PostFilter) -> bool:
    if flt.status and post.status != flt.status:
        return False
    if flt.category and post.category != flt.category:
        return False
    term = flt.search_term
    if term:
        return (
            term in post.title.lower()
            or term in post.excerpt.lower()
            or term in post.content.lower()
        )
    return True


def effective_sort_key(post: Post) -> tuple[bool, datetime, datetime, int]:
    """Sort key (use with ``reverse=True``): dated posts newest first, then undated by creation."""
    published = as_utc(post.published_at)
    return (
        published is not None,
        published or _EPOCH,
        as_utc(post.created_at) or _EPOCH,
        post.id,
    )


def search_sort_key(query: str) -> Callable[[Post], tuple]:
    """Sort key (use with ``reverse=True``): title matches first, then ``effective_sort_key``."""
    term = query.lower()

    def key(post: Post) -> tuple:
        return (term in post.title.lower(), *effective_sort_key(post))

    return key


def paginate(items: Sequence[T], limit: int | None, offset: int | None) -> list[T]:
    """Slice a sorted sequence; ``limit=None`` means no limit."""
    start = offset or 0
    if limit is None:
        return list(items[start:])
    return list(items[start : start + limit])


def new_post_fields(data: InsertPost, slug: str, now: datetime) -> dict[str, Any]:
    """Column values for a new post (everything except the id)."""
    fields = data.model_dump(exclude={"publish_now", "slug"})
    fields.update(slug=slug, created_at=now, updated_at=now, published_at=None)
    if data.publish_now:
        fields["status"] = "published"
        fields["published_at"] = now
    return fields


def requested_slug(current: Post, changes: UpdatePost) -> str | None:
    """Base slug an update asks for, or None when the slug should stay.

    An explicit slug wins; otherwise a changed title regenerates it.
    """
    if changes.slug:
        base = changes.slug
    elif changes.title and changes.title != current.title:
        base = slugify(changes.title)
    else:
        return None
    return None if base == current.slug else base


def post_update_fields(current: Post, changes: UpdatePost, now: datetime) -> dict[str, Any]:
    """Column values to change for a partial update (slug handled separately).

    ``publish_now`` publishes the post; an already-set ``published_at`` is
    never cleared or moved.
    """
    fields = {
        key: value
        for key, value in changes.model_dump(
            exclude_unset=True, exclude={"publish_now", "slug"}
        ).items()
        if value is not None or key not in _REQUIRED_FIELDS
    }
    fields["updated_at"] = now
    if changes.publish_now:
        fields["status"] = "published"
        if current.published_at is None:
            fields["published_at"] = now
    return fields
