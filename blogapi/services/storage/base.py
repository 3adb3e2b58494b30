"""The storage contract every backend implements."""

from abc import ABC, abstractmethod
from collections.abc import Callable

from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.models.subscriber import InsertSubscriber, Subscriber
from blogapi.models.user import InsertUser, UpdateUser, User
from blogapi.services.storage.sessions import SessionStore


class Storage(ABC):
    """CRUD and query operations over users, posts and subscribers.

    Lookups return None for a missing entity rather than raising. List
    operations order posts by ``effective_sort_key`` (search: title matches
    first) and treat ``limit=None`` as "no limit". Networked backends raise
    ``StorageUnavailable`` when the store cannot be reached.
    """

    kind: str = "abstract"

    # Set by the supervisor; backends with a driver-level connection monitor
    # call it on the event loop with True (reconnected) or False (lost).
    on_connection_change: Callable[[bool], None] | None = None

    async def connect(self) -> None:
        """Open connections and run one-time bootstrap. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    def is_ready(self) -> bool:
        """Cheap, non-blocking view of connection health."""
        return True

    @property
    @abstractmethod
    def sessions(self) -> SessionStore:
        """Session store handle for the authentication layer."""

    # Users

    @abstractmethod
    async def get_user(self, user_id: int) -> User | None: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup."""

    @abstractmethod
    async def create_user(self, data: InsertUser) -> User:
        """Create a user; raises ``ConflictError`` for a taken username."""

    @abstractmethod
    async def update_user(self, user_id: int, data: UpdateUser) -> User | None: ...

    # Posts

    @abstractmethod
    async def get_post(self, post_id: int) -> Post | None: ...

    @abstractmethod
    async def get_post_by_slug(self, slug: str) -> Post | None: ...

    @abstractmethod
    async def get_all_posts(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]: ...

    @abstractmethod
    async def get_posts_by_category(
        self,
        category: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]: ...

    @abstractmethod
    async def create_post(self, data: InsertPost) -> Post:
        """Create a post, disambiguating a colliding slug with a numeric suffix."""

    @abstractmethod
    async def update_post(self, post_id: int, data: UpdatePost) -> Post | None: ...

    @abstractmethod
    async def delete_post(self, post_id: int) -> bool: ...

    @abstractmethod
    async def search_posts(
        self,
        query: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        """Case-insensitive substring match on title, excerpt or content."""

    @abstractmethod
    async def get_featured_post(self) -> Post | None:
        """Most recent published post."""

    @abstractmethod
    async def get_popular_posts(self, limit: int = 5) -> list[Post]:
        """Most recent published posts (there is no popularity signal)."""

    @abstractmethod
    async def get_post_count(
        self,
        status: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> int:
        """Count with exactly the filters the matching list operation applies."""

    # Subscribers

    @abstractmethod
    async def get_subscriber(self, subscriber_id: int) -> Subscriber | None: ...

    @abstractmethod
    async def get_subscriber_by_email(self, email: str) -> Subscriber | None: ...

    @abstractmethod
    async def create_subscriber(self, data: InsertSubscriber) -> Subscriber:
        """Create a subscriber; raises ``ConflictError`` for a known email."""

    @abstractmethod
    async def get_all_subscribers(self) -> list[Subscriber]:
        """All subscribers, oldest first."""
