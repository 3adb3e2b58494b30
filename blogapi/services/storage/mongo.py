"""Document-store backend on MongoDB (pymongo).

pymongo is synchronous, so every driver call runs in a worker thread via
``asyncio.to_thread``. Driver failures surface as ``StorageUnavailable``
except duplicate-key errors, which become ``ConflictError`` (or a slug
retry).
"""

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from pydantic.alias_generators import to_camel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument, monitoring
from pymongo.collation import Collation
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.models.subscriber import InsertSubscriber, Subscriber
from blogapi.models.user import InsertUser, UpdateUser, User
from blogapi.services.storage import seed
from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import ConflictError, StorageUnavailable
from blogapi.services.storage.posts import (
    PostFilter,
    new_post_fields,
    post_update_fields,
    requested_slug,
    slugify,
    unique_slug,
    utcnow,
)
from blogapi.services.storage.sessions import SessionStore

logger = logging.getLogger(__name__)

# Username lookups and the username unique index ignore case
CASE_INSENSITIVE = Collation(locale="en", strength=2)

# Never return Mongo's own _id; entities carry a numeric ``id``
PROJECTION = {"_id": 0}

# Newest first; documents without publishedAt sort after all dated ones
POST_SORT = [("publishedAt", DESCENDING), ("createdAt", DESCENDING), ("id", DESCENDING)]

SEARCH_FIELDS = ("title", "excerpt", "content")

# Attempts at inserting a post when a concurrent writer takes the slug first
SLUG_RETRIES = 3


def to_document(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert snake_case model fields to camelCase document keys."""
    return {to_camel(key): value for key, value in fields.items()}


def mongo_filter(flt: PostFilter) -> dict[str, Any]:
    """Translate a PostFilter into a Mongo query (shared by find and count)."""
    query: dict[str, Any] = {}
    if flt.status:
        query["status"] = flt.status
    if flt.category:
        query["category"] = flt.category
    if flt.query:
        pattern = re.escape(flt.query)
        query["$or"] = [
            {field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS
        ]
    return query


def search_pipeline(
    flt: PostFilter, limit: int | None, offset: int | None
) -> list[dict[str, Any]]:
    """Aggregation ranking title matches first, then by effective date."""
    pipeline: list[dict[str, Any]] = [
        {"$match": mongo_filter(flt)},
        {
            "$addFields": {
                "_titleMatch": {
                    "$regexMatch": {
                        "input": "$title",
                        "regex": re.escape(flt.query or ""),
                        "options": "i",
                    }
                }
            }
        },
        {"$sort": {"_titleMatch": -1, "publishedAt": -1, "createdAt": -1, "id": -1}},
        {"$skip": offset or 0},
    ]
    if limit is not None:
        pipeline.append({"$limit": limit})
    pipeline.append({"$project": {"_id": 0, "_titleMatch": 0}})
    return pipeline


class _TopologyListener(monitoring.TopologyListener):
    """Forward topology changes (monitor thread) to the storage instance."""

    def __init__(self, storage: "MongoStorage") -> None:
        self._storage = storage

    def opened(self, event: monitoring.TopologyOpenedEvent) -> None:
        pass

    def description_changed(self, event: monitoring.TopologyDescriptionChangedEvent) -> None:
        self._storage._on_topology_change(event.new_description.has_writable_server())

    def closed(self, event: monitoring.TopologyClosedEvent) -> None:
        pass


class MongoSessionStore(SessionStore):
    """Sessions in the ``sessions`` collection, expired by a TTL index."""

    kind = "document"

    def __init__(self, storage: "MongoStorage", ttl_seconds: float) -> None:
        self._storage = storage
        self._ttl = timedelta(seconds=ttl_seconds)

    async def get(self, sid: str) -> dict[str, Any] | None:
        doc = await self._storage._run(
            self._storage._collection("sessions").find_one,
            {"_id": sid, "expires": {"$gt": utcnow()}},
        )
        return doc["session"] if doc else None

    async def set(self, sid: str, data: dict[str, Any]) -> None:
        await self._storage._run(
            self._storage._collection("sessions").replace_one,
            {"_id": sid},
            {"_id": sid, "session": data, "expires": utcnow() + self._ttl},
            upsert=True,
        )

    async def destroy(self, sid: str) -> None:
        sessions = self._storage._collection("sessions")
        await self._storage._run(sessions.delete_one, {"_id": sid})

    async def prune(self) -> int:
        sessions = self._storage._collection("sessions")
        result = await self._storage._run(
            sessions.delete_many, {"expires": {"$lte": utcnow()}}
        )
        return result.deleted_count


class MongoStorage(Storage):
    """Storage over ``users``, ``posts``, ``subscribers`` (plus ``counters``, ``sessions``)."""

    kind = "document"

    def __init__(
        self,
        url: str,
        database: str = "blog",
        connect_timeout: float = 5.0,
        session_ttl: float = 14 * 24 * 60 * 60,
        admin_username: str = "admin",
        admin_password: str = "admin123",
        client_factory: Callable[..., MongoClient] = MongoClient,
    ) -> None:
        self._url = url
        self._database = database
        self._connect_timeout = connect_timeout
        self._admin_username = admin_username
        self._admin_password = admin_password
        self._client_factory = client_factory
        self._client: MongoClient | None = None
        self.db: Any = None
        self._ready = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._sessions = MongoSessionStore(self, session_ttl)
        # Called on the event loop with True (reconnected) / False (lost)
        self.on_connection_change: Callable[[bool], None] | None = None

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def is_ready(self) -> bool:
        return self._ready

    # Connection lifecycle

    async def connect(self) -> None:
        """Connect, verify with a ping, create indexes and seed the admin once."""
        async with self._init_lock:
            self._loop = asyncio.get_running_loop()
            if self._client is None:
                timeout_ms = int(self._connect_timeout * 1000)
                self._client = self._client_factory(
                    self._url,
                    serverSelectionTimeoutMS=timeout_ms,
                    connectTimeoutMS=timeout_ms,
                    tz_aware=True,
                    appname="blogapi",
                    event_listeners=[_TopologyListener(self)],
                )
                self.db = self._client.get_default_database(default=self._database)
            await self._run(self._client.admin.command, "ping")
            self._ready = True
            if not self._initialized:
                await self._run(self._ensure_indexes)
                await self._bootstrap()
                self._initialized = True
        logger.info("Connected to document store (database %s)", self.db.name)

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            self._ready = False
            await asyncio.to_thread(client.close)

    def _ensure_indexes(self) -> None:
        users = self._collection("users")
        users.create_index("id", unique=True)
        users.create_index("username", unique=True, collation=CASE_INSENSITIVE)
        posts = self._collection("posts")
        posts.create_index("id", unique=True)
        posts.create_index("slug", unique=True)
        posts.create_index([("status", ASCENDING), ("publishedAt", DESCENDING)])
        posts.create_index("category")
        subscribers = self._collection("subscribers")
        subscribers.create_index("id", unique=True)
        subscribers.create_index("email", unique=True)
        self._collection("sessions").create_index("expires", expireAfterSeconds=0)

    async def _bootstrap(self) -> None:
        if await self.get_user_by_username(self._admin_username) is None:
            logger.info("Creating default admin user %s", self._admin_username)
            try:
                await self.create_user(
                    seed.admin_user(self._admin_username, self._admin_password)
                )
            except ConflictError:
                # Another process seeded it first
                pass

    def _on_topology_change(self, writable: bool) -> None:
        """Runs on a driver monitor thread; hop to the loop on state changes.

        Only the deployment as a whole counts: one unreachable replica-set
        member leaves the connection up while a writable server remains.
        """
        if writable == self._ready:
            return
        self._ready = writable
        callback = self.on_connection_change
        if callback is not None and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, writable)

    def _collection(self, name: str) -> Collection:
        if self.db is None:
            raise StorageUnavailable("document store is not connected")
        return self.db[name]

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking driver call off the loop, translating driver errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DuplicateKeyError:
            raise
        except ConnectionFailure as exc:
            self._ready = False
            raise StorageUnavailable(f"document store unreachable: {exc}") from exc
        except PyMongoError as exc:
            raise StorageUnavailable(f"document store error: {exc}") from exc

    async def _next_id(self, name: str) -> int:
        counter = await self._run(
            self._collection("counters").find_one_and_update,
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    def _slug_taken(self, exclude_id: int | None = None):
        async def exists(candidate: str) -> bool:
            query: dict[str, Any] = {"slug": candidate}
            if exclude_id is not None:
                query["id"] = {"$ne": exclude_id}
            count = await self._run(self._collection("posts").count_documents, query, limit=1)
            return count > 0

        return exists

    async def _find_posts(
        self, flt: PostFilter, limit: int | None, offset: int | None
    ) -> list[Post]:
        if flt.query:
            pipeline = search_pipeline(flt, limit, offset)
            docs = await self._run(lambda: list(self._collection("posts").aggregate(pipeline)))
        else:
            query = mongo_filter(flt)

            def fetch() -> list[dict[str, Any]]:
                cursor = self._collection("posts").find(query, PROJECTION).sort(POST_SORT)
                if offset:
                    cursor = cursor.skip(offset)
                if limit is not None:
                    cursor = cursor.limit(limit)
                return list(cursor)

            docs = await self._run(fetch)
        return [Post.model_validate(doc) for doc in docs]

    # Users

    async def get_user(self, user_id: int) -> User | None:
        doc = await self._run(self._collection("users").find_one, {"id": user_id}, PROJECTION)
        return User.model_validate(doc) if doc else None

    async def get_user_by_username(self, username: str) -> User | None:
        doc = await self._run(
            self._collection("users").find_one,
            {"username": username},
            PROJECTION,
            collation=CASE_INSENSITIVE,
        )
        return User.model_validate(doc) if doc else None

    async def create_user(self, data: InsertUser) -> User:
        fields = data.model_dump()
        fields["display_name"] = data.display_name or data.username
        doc = {"id": await self._next_id("users"), **to_document(fields)}
        doc["createdAt"] = utcnow()
        try:
            await self._run(self._collection("users").insert_one, dict(doc))
        except DuplicateKeyError as exc:
            raise ConflictError("Username already exists", field="username") from exc
        return User.model_validate(doc)

    async def update_user(self, user_id: int, data: UpdateUser) -> User | None:
        fields = data.model_dump(exclude_unset=True)
        if fields.get("password") is None:
            fields.pop("password", None)
        fields["updated_at"] = utcnow()
        doc = await self._run(
            self._collection("users").find_one_and_update,
            {"id": user_id},
            {"$set": to_document(fields)},
            projection=PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        return User.model_validate(doc) if doc else None

    # Posts

    async def get_post(self, post_id: int) -> Post | None:
        doc = await self._run(self._collection("posts").find_one, {"id": post_id}, PROJECTION)
        return Post.model_validate(doc) if doc else None

    async def get_post_by_slug(self, slug: str) -> Post | None:
        doc = await self._run(self._collection("posts").find_one, {"slug": slug}, PROJECTION)
        return Post.model_validate(doc) if doc else None

    async def get_all_posts(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._find_posts(PostFilter(status=status), limit, offset)

    async def get_posts_by_category(
        self,
        category: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        flt = PostFilter(status=status, category=category)
        return await self._find_posts(flt, limit, offset)

    async def create_post(self, data: InsertPost) -> Post:
        base = data.slug or slugify(data.title)
        for _attempt in range(SLUG_RETRIES):
            slug = await unique_slug(base, self._slug_taken())
            fields = new_post_fields(data, slug, utcnow())
            doc = {"id": await self._next_id("posts"), **to_document(fields)}
            try:
                await self._run(self._collection("posts").insert_one, dict(doc))
            except DuplicateKeyError:
                logger.info("Slug %s was taken concurrently, regenerating", slug)
                continue
            return Post.model_validate(doc)
        raise ConflictError("Could not allocate a unique slug", field="slug")

    async def update_post(self, post_id: int, data: UpdatePost) -> Post | None:
        for _attempt in range(SLUG_RETRIES):
            current = await self.get_post(post_id)
            if current is None:
                return None
            fields = post_update_fields(current, data, utcnow())
            base = requested_slug(current, data)
            if base:
                fields["slug"] = await unique_slug(base, self._slug_taken(exclude_id=post_id))
            try:
                doc = await self._run(
                    self._collection("posts").find_one_and_update,
                    {"id": post_id},
                    {"$set": to_document(fields)},
                    projection=PROJECTION,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                logger.info("Slug for post %d was taken concurrently, regenerating", post_id)
                continue
            return Post.model_validate(doc) if doc else None
        raise ConflictError("Could not allocate a unique slug", field="slug")

    async def delete_post(self, post_id: int) -> bool:
        result = await self._run(self._collection("posts").delete_one, {"id": post_id})
        return result.deleted_count == 1

    async def search_posts(
        self,
        query: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._find_posts(PostFilter(status=status, query=query), limit, offset)

    async def get_featured_post(self) -> Post | None:
        posts = await self._find_posts(PostFilter(status="published"), 1, 0)
        return posts[0] if posts else None

    async def get_popular_posts(self, limit: int = 5) -> list[Post]:
        return await self._find_posts(PostFilter(status="published"), limit, 0)

    async def get_post_count(
        self,
        status: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> int:
        flt = PostFilter(status=status, category=category, query=query)
        return await self._run(self._collection("posts").count_documents, mongo_filter(flt))

    # Subscribers

    async def get_subscriber(self, subscriber_id: int) -> Subscriber | None:
        doc = await self._run(
            self._collection("subscribers").find_one, {"id": subscriber_id}, PROJECTION
        )
        return Subscriber.model_validate(doc) if doc else None

    async def get_subscriber_by_email(self, email: str) -> Subscriber | None:
        doc = await self._run(
            self._collection("subscribers").find_one, {"email": email.lower()}, PROJECTION
        )
        return Subscriber.model_validate(doc) if doc else None

    async def create_subscriber(self, data: InsertSubscriber) -> Subscriber:
        doc = {
            "id": await self._next_id("subscribers"),
            "email": data.email.lower(),
            "createdAt": utcnow(),
        }
        try:
            await self._run(self._collection("subscribers").insert_one, dict(doc))
        except DuplicateKeyError as exc:
            raise ConflictError("Email already subscribed", field="email") from exc
        return Subscriber.model_validate(doc)

    async def get_all_subscribers(self) -> list[Subscriber]:
        docs = await self._run(
            lambda: list(
                self._collection("subscribers")
                .find({}, PROJECTION)
                .sort([("createdAt", ASCENDING), ("id", ASCENDING)])
            )
        )
        return [Subscriber.model_validate(doc) for doc in docs]
