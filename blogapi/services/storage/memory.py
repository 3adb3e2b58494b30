"""Volatile in-memory backend, used by default and as the automatic fallback."""

import logging
from datetime import timedelta
from typing import Any

from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.models.subscriber import InsertSubscriber, Subscriber
from blogapi.models.user import InsertUser, UpdateUser, User
from blogapi.services.storage import seed
from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import ConflictError
from blogapi.services.storage.posts import (
    PostFilter,
    effective_sort_key,
    matches_filter,
    new_post_fields,
    paginate,
    post_update_fields,
    requested_slug,
    search_sort_key,
    slugify,
    unique_slug,
    utcnow,
)
from blogapi.services.storage.sessions import MemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 14 * 24 * 60 * 60


class MemoryStorage(Storage):
    """Dict-backed storage with per-entity id counters.

    Queries filter and sort a snapshot of the posts, O(n) per call. A new
    instance starts empty apart from the seeded administrator and, unless
    ``with_samples`` is False, the sample posts.
    """

    kind = "memory"

    def __init__(
        self,
        admin_username: str = "admin",
        admin_password: str = "admin123",
        session_ttl: float = DEFAULT_SESSION_TTL,
        with_samples: bool = True,
    ) -> None:
        self._users: dict[int, User] = {}
        self._posts: dict[int, Post] = {}
        self._subscribers: dict[int, Subscriber] = {}
        self._next_user_id = 1
        self._next_post_id = 1
        self._next_subscriber_id = 1
        self._sessions = MemorySessionStore(ttl_seconds=session_ttl)
        self._seed(admin_username, admin_password, with_samples)

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def _seed(self, admin_username: str, admin_password: str, with_samples: bool) -> None:
        admin = self._insert_user(seed.admin_user(admin_username, admin_password))
        if not with_samples:
            return
        now = utcnow()
        for index, payload in enumerate(seed.sample_posts(admin.id)):
            published = now - timedelta(days=index * seed.SAMPLE_POST_SPACING_DAYS)
            fields = new_post_fields(payload, slugify(payload.title), published)
            self._insert_post(fields)
        logger.info("Seeded in-memory storage with %d sample posts", len(self._posts))

    def _insert_user(self, data: InsertUser) -> User:
        user = User(
            id=self._next_user_id,
            username=data.username,
            password=data.password,
            display_name=data.display_name or data.username,
            profile_image=data.profile_image,
            is_admin=data.is_admin,
        )
        self._next_user_id += 1
        self._users[user.id] = user
        return user

    def _insert_post(self, fields: dict[str, Any]) -> Post:
        post = Post(id=self._next_post_id, **fields)
        self._next_post_id += 1
        self._posts[post.id] = post
        return post

    def _slug_taken(self, exclude_id: int | None = None):
        async def exists(candidate: str) -> bool:
            return any(
                post.slug == candidate and post.id != exclude_id
                for post in self._posts.values()
            )

        return exists

    def _select(self, flt: PostFilter) -> list[Post]:
        posts = [post for post in self._posts.values() if matches_filter(post, flt)]
        if flt.query:
            posts.sort(key=search_sort_key(flt.query), reverse=True)
        else:
            posts.sort(key=effective_sort_key, reverse=True)
        return posts

    # Users

    async def get_user(self, user_id: int) -> User | None:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> User | None:
        wanted = username.lower()
        for user in self._users.values():
            if user.username.lower() == wanted:
                return user
        return None

    async def create_user(self, data: InsertUser) -> User:
        if await self.get_user_by_username(data.username):
            raise ConflictError("Username already exists", field="username")
        return self._insert_user(data)

    async def update_user(self, user_id: int, data: UpdateUser) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        changes = data.model_dump(exclude_unset=True)
        if changes.get("password") is None:
            changes.pop("password", None)
        updated = user.model_copy(update=changes)
        self._users[user_id] = updated
        return updated

    # Posts

    async def get_post(self, post_id: int) -> Post | None:
        return self._posts.get(post_id)

    async def get_post_by_slug(self, slug: str) -> Post | None:
        for post in self._posts.values():
            if post.slug == slug:
                return post
        return None

    async def get_all_posts(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return paginate(self._select(PostFilter(status=status)), limit, offset)

    async def get_posts_by_category(
        self,
        category: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        flt = PostFilter(status=status, category=category)
        return paginate(self._select(flt), limit, offset)

    async def create_post(self, data: InsertPost) -> Post:
        slug = await unique_slug(data.slug or slugify(data.title), self._slug_taken())
        return self._insert_post(new_post_fields(data, slug, utcnow()))

    async def update_post(self, post_id: int, data: UpdatePost) -> Post | None:
        current = self._posts.get(post_id)
        if current is None:
            return None
        changes = post_update_fields(current, data, utcnow())
        base = requested_slug(current, data)
        if base:
            changes["slug"] = await unique_slug(base, self._slug_taken(exclude_id=post_id))
        updated = current.model_copy(update=changes)
        self._posts[post_id] = updated
        return updated

    async def delete_post(self, post_id: int) -> bool:
        return self._posts.pop(post_id, None) is not None

    async def search_posts(
        self,
        query: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        flt = PostFilter(status=status, query=query)
        return paginate(self._select(flt), limit, offset)

    async def get_featured_post(self) -> Post | None:
        posts = self._select(PostFilter(status="published"))
        return posts[0] if posts else None

    async def get_popular_posts(self, limit: int = 5) -> list[Post]:
        return await self.get_all_posts(status="published", limit=limit)

    async def get_post_count(
        self,
        status: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> int:
        flt = PostFilter(status=status, category=category, query=query)
        return sum(1 for post in self._posts.values() if matches_filter(post, flt))

    # Subscribers

    async def get_subscriber(self, subscriber_id: int) -> Subscriber | None:
        return self._subscribers.get(subscriber_id)

    async def get_subscriber_by_email(self, email: str) -> Subscriber | None:
        wanted = email.lower()
        for subscriber in self._subscribers.values():
            if subscriber.email.lower() == wanted:
                return subscriber
        return None

    async def create_subscriber(self, data: InsertSubscriber) -> Subscriber:
        if await self.get_subscriber_by_email(data.email):
            raise ConflictError("Email already subscribed", field="email")
        subscriber = Subscriber(
            id=self._next_subscriber_id, email=data.email, created_at=utcnow()
        )
        self._next_subscriber_id += 1
        self._subscribers[subscriber.id] = subscriber
        return subscriber

    async def get_all_subscribers(self) -> list[Subscriber]:
        return sorted(self._subscribers.values(), key=lambda s: (s.created_at, s.id))
