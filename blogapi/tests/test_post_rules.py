"""Tests for backend-independent post rules (slugs, filters, ordering, updates)."""

from datetime import datetime, timedelta, timezone

import pytest

from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.services.storage.posts import (
    PostFilter,
    as_utc,
    effective_sort_key,
    matches_filter,
    new_post_fields,
    paginate,
    post_update_fields,
    requested_slug,
    search_sort_key,
    slugify,
    unique_slug,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_post(post_id: int = 1, **overrides) -> Post:
    fields = {
        "id": post_id,
        "title": f"Post {post_id}",
        "slug": f"post-{post_id}",
        "excerpt": "An excerpt",
        "content": "Some content",
        "category": "Tech News",
        "status": "draft",
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return Post(**fields)


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Intro to Testing", "intro-to-testing"),
        ("  Hello,   World!  ", "hello-world"),
        ("Rock & Roll", "rock-roll"),
        ("Q&A Session", "qa-session"),
        ("C++ -- the good parts", "c-the-good-parts"),
        ("Café au lait", "caf-au-lait"),
        ("!!!", "post"),
    ],
)
def test_slugify(title, expected):
    assert slugify(title) == expected


async def test_unique_slug_appends_increasing_suffix():
    taken = {"intro", "intro-1"}

    async def exists(candidate: str) -> bool:
        return candidate in taken

    assert await unique_slug("intro", exists) == "intro-2"
    assert await unique_slug("fresh", exists) == "fresh"


def test_matches_filter_status_category_and_query():
    post = make_post(status="published", title="Learning Python", category="Web Development")
    assert matches_filter(post, PostFilter())
    assert matches_filter(post, PostFilter(status="published"))
    assert not matches_filter(post, PostFilter(status="draft"))
    assert not matches_filter(post, PostFilter(category="Machine Learning"))
    assert matches_filter(post, PostFilter(query="PYTHON"))
    assert matches_filter(post, PostFilter(query="excerpt"))
    assert matches_filter(post, PostFilter(query="content"))
    assert not matches_filter(post, PostFilter(query="rust"))


def test_effective_sort_puts_dated_posts_first_newest_first():
    old = make_post(1, published_at=NOW - timedelta(days=2))
    new = make_post(2, published_at=NOW)
    draft_old = make_post(3, created_at=NOW - timedelta(days=5))
    draft_new = make_post(4, created_at=NOW + timedelta(days=1))

    ordered = sorted([draft_old, old, draft_new, new], key=effective_sort_key, reverse=True)

    assert [p.id for p in ordered] == [2, 1, 4, 3]


def test_search_sort_ranks_title_matches_first():
    body_match = make_post(1, content="all about python", published_at=NOW)
    title_match = make_post(2, title="Python tips", published_at=NOW - timedelta(days=30))

    ordered = sorted([body_match, title_match], key=search_sort_key("python"), reverse=True)

    assert [p.id for p in ordered] == [2, 1]


def test_as_utc_marks_naive_datetimes():
    naive = datetime(2024, 1, 1, 8, 30)
    assert as_utc(naive).tzinfo is timezone.utc
    assert as_utc(None) is None
    assert as_utc(NOW) is NOW


def test_paginate():
    items = list(range(10))
    assert paginate(items, 3, 0) == [0, 1, 2]
    assert paginate(items, 3, 9) == [9]
    assert paginate(items, None, 7) == [7, 8, 9]
    assert paginate(items, 5, 20) == []


def test_new_post_fields_without_publish_now_leaves_published_at_unset():
    data = InsertPost(title="T", excerpt="E", content="C", category="Tech News")
    fields = new_post_fields(data, "t", NOW)
    assert fields["slug"] == "t"
    assert fields["status"] == "draft"
    assert fields["published_at"] is None
    assert fields["created_at"] == fields["updated_at"] == NOW
    assert "publish_now" not in fields


def test_new_post_fields_with_publish_now_publishes():
    data = InsertPost(title="T", excerpt="E", content="C", category="Tech News", publish_now=True)
    fields = new_post_fields(data, "t", NOW)
    assert fields["status"] == "published"
    assert fields["published_at"] == NOW


def test_requested_slug_rules():
    current = make_post(title="Old title", slug="old-title")
    assert requested_slug(current, UpdatePost(content="new body")) is None
    assert requested_slug(current, UpdatePost(title="Old title")) is None
    assert requested_slug(current, UpdatePost(title="New title")) == "new-title"
    assert requested_slug(current, UpdatePost(title="New title", slug="custom")) == "custom"
    assert requested_slug(current, UpdatePost(slug="old-title")) is None


def test_update_fields_skip_nulls_for_required_fields():
    current = make_post()
    changes = UpdatePost.model_validate({"title": None, "featuredImage": None, "readTime": 4})
    fields = post_update_fields(current, changes, NOW)
    assert "title" not in fields
    assert fields["featured_image"] is None
    assert fields["read_time"] == 4
    assert fields["updated_at"] == NOW


def test_publish_now_keeps_existing_published_at():
    first = NOW - timedelta(days=10)
    current = make_post(status="published", published_at=first)
    fields = post_update_fields(current, UpdatePost(publish_now=True), NOW)
    assert fields["status"] == "published"
    assert "published_at" not in fields


def test_publish_now_on_draft_stamps_published_at():
    fields = post_update_fields(make_post(), UpdatePost(publish_now=True), NOW)
    assert fields["status"] == "published"
    assert fields["published_at"] == NOW
