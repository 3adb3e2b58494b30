"""Relational backend on SQLAlchemy (PostgreSQL in production, SQLite locally).

Each operation opens a short-lived ORM session inside a worker thread.
List, search and count queries share ``sql_conditions`` so ``total`` always
agrees with the rows a page is cut from.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from sqlalchemy import case, create_engine, delete, func, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.models.subscriber import InsertSubscriber, Subscriber
from blogapi.models.user import InsertUser, UpdateUser, User
from blogapi.services.storage import seed
from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import ConflictError, StorageUnavailable
from blogapi.services.storage.posts import (
    PostFilter,
    as_utc,
    new_post_fields,
    post_update_fields,
    requested_slug,
    slugify,
    unique_slug,
    utcnow,
)
from blogapi.services.storage.sessions import SessionStore
from blogapi.services.storage.tables import (
    Base,
    PostRow,
    SessionRow,
    SubscriberRow,
    UserRow,
)

logger = logging.getLogger(__name__)

# Attempts at writing a post when a concurrent writer takes the slug first
SLUG_RETRIES = 3

_CONNECTION_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def normalize_url(url: str) -> str:
    """SQLAlchemy only accepts the ``postgresql`` dialect name."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://") :]
    return url


def build_engine(url: str, connect_timeout: float = 5.0, echo: bool = False) -> Engine:
    url = normalize_url(url)
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or every thread would see its own empty DB
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        echo=echo,
        connect_args={"connect_timeout": int(connect_timeout)},
    )


def sql_conditions(flt: PostFilter) -> list[Any]:
    """WHERE clauses for a PostFilter (shared by list, search and count)."""
    conditions: list[Any] = []
    if flt.status:
        conditions.append(PostRow.status == flt.status)
    if flt.category:
        conditions.append(PostRow.category == flt.category)
    if flt.query:
        conditions.append(
            or_(
                PostRow.title.icontains(flt.query, autoescape=True),
                PostRow.excerpt.icontains(flt.query, autoescape=True),
                PostRow.content.icontains(flt.query, autoescape=True),
            )
        )
    return conditions


def post_ordering(flt: PostFilter) -> list[Any]:
    """Title matches first for searches, then dated posts newest first, then undated."""
    ordering: list[Any] = []
    if flt.query:
        ordering.append(
            case((PostRow.title.icontains(flt.query, autoescape=True), 0), else_=1)
        )
    ordering += [
        PostRow.published_at.desc().nulls_last(),
        PostRow.created_at.desc(),
        PostRow.id.desc(),
    ]
    return ordering


def _columns(row: Any) -> dict[str, Any]:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


def _to_user(row: UserRow) -> User:
    return User.model_validate(_columns(row))


def _to_post(row: PostRow) -> Post:
    data = _columns(row)
    for key in ("created_at", "updated_at", "published_at"):
        data[key] = as_utc(data[key])
    return Post.model_validate(data)


def _to_subscriber(row: SubscriberRow) -> Subscriber:
    data = _columns(row)
    data["created_at"] = as_utc(data["created_at"])
    return Subscriber.model_validate(data)


class SqlSessionStore(SessionStore):
    """Sessions in the ``sessions`` table (created with the schema if missing)."""

    kind = "relational"

    def __init__(self, storage: "SqlStorage", ttl_seconds: float) -> None:
        self._storage = storage
        self._ttl = timedelta(seconds=ttl_seconds)

    async def get(self, sid: str) -> dict[str, Any] | None:
        def work(session: Session) -> dict[str, Any] | None:
            row = session.execute(
                select(SessionRow).where(
                    SessionRow.sid == sid, SessionRow.expire > utcnow()
                )
            ).scalar_one_or_none()
            return dict(row.sess) if row else None

        return await self._storage._run(work)

    async def set(self, sid: str, data: dict[str, Any]) -> None:
        def work(session: Session) -> None:
            session.merge(SessionRow(sid=sid, sess=dict(data), expire=utcnow() + self._ttl))
            session.commit()

        await self._storage._run(work)

    async def destroy(self, sid: str) -> None:
        def work(session: Session) -> None:
            session.execute(delete(SessionRow).where(SessionRow.sid == sid))
            session.commit()

        await self._storage._run(work)

    async def prune(self) -> int:
        def work(session: Session) -> int:
            result = session.execute(delete(SessionRow).where(SessionRow.expire <= utcnow()))
            session.commit()
            return result.rowcount

        return await self._storage._run(work)


class SqlStorage(Storage):
    """Table-per-entity storage; bootstraps the schema and admin on connect."""

    kind = "relational"

    def __init__(
        self,
        url: str,
        connect_timeout: float = 5.0,
        session_ttl: float = 14 * 24 * 60 * 60,
        admin_username: str = "admin",
        admin_password: str = "admin123",
        echo: bool = False,
    ) -> None:
        self._url = url
        self._connect_timeout = connect_timeout
        self._admin_username = admin_username
        self._admin_password = admin_password
        self._echo = echo
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None
        self._ready = False
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._sessions = SqlSessionStore(self, session_ttl)

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def is_ready(self) -> bool:
        return self._ready

    # Connection lifecycle

    async def connect(self) -> None:
        """Verify connectivity, create missing tables and seed the admin once."""
        async with self._init_lock:
            if self._engine is None:
                self._engine = build_engine(self._url, self._connect_timeout, self._echo)
                self._session_factory = sessionmaker(
                    bind=self._engine, autoflush=False, expire_on_commit=False
                )
            await self._run(lambda session: session.execute(text("SELECT 1")))
            self._ready = True
            if not self._initialized:
                await self._run(lambda session: Base.metadata.create_all(session.get_bind()))
                await self._bootstrap()
                self._initialized = True
        logger.info("Connected to relational store (%s)", self._engine.dialect.name)

    async def close(self) -> None:
        if self._engine is not None:
            engine, self._engine = self._engine, None
            self._session_factory = None
            self._ready = False
            await asyncio.to_thread(engine.dispose)

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

    async def _run(self, fn: Callable[[Session], Any]) -> Any:
        """Run ``fn(session)`` in a worker thread, translating connection errors."""
        if self._session_factory is None:
            raise StorageUnavailable("relational store is not connected")
        factory = self._session_factory

        def work() -> Any:
            with factory() as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except _CONNECTION_ERRORS as exc:
            self._ready = False
            raise StorageUnavailable(f"relational store unreachable: {exc}") from exc

    def _slug_taken(self, exclude_id: int | None = None):
        async def exists(candidate: str) -> bool:
            def work(session: Session) -> bool:
                stmt = select(PostRow.id).where(PostRow.slug == candidate)
                if exclude_id is not None:
                    stmt = stmt.where(PostRow.id != exclude_id)
                return session.execute(stmt.limit(1)).first() is not None

            return await self._run(work)

        return exists

    async def _select_posts(
        self, flt: PostFilter, limit: int | None, offset: int | None
    ) -> list[Post]:
        def work(session: Session) -> list[Post]:
            stmt = select(PostRow).where(*sql_conditions(flt)).order_by(*post_ordering(flt))
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)
            return [_to_post(row) for row in session.execute(stmt).scalars()]

        return await self._run(work)

    # Users

    async def get_user(self, user_id: int) -> User | None:
        def work(session: Session) -> User | None:
            row = session.get(UserRow, user_id)
            return _to_user(row) if row else None

        return await self._run(work)

    async def get_user_by_username(self, username: str) -> User | None:
        def work(session: Session) -> User | None:
            row = session.execute(
                select(UserRow).where(func.lower(UserRow.username) == username.lower())
            ).scalar_one_or_none()
            return _to_user(row) if row else None

        return await self._run(work)

    async def create_user(self, data: InsertUser) -> User:
        def work(session: Session) -> User:
            row = UserRow(
                username=data.username,
                password=data.password,
                display_name=data.display_name or data.username,
                profile_image=data.profile_image,
                is_admin=data.is_admin,
            )
            session.add(row)
            session.commit()
            return _to_user(row)

        try:
            return await self._run(work)
        except IntegrityError as exc:
            raise ConflictError("Username already exists", field="username") from exc

    async def update_user(self, user_id: int, data: UpdateUser) -> User | None:
        changes = data.model_dump(exclude_unset=True)
        if changes.get("password") is None:
            changes.pop("password", None)

        def work(session: Session) -> User | None:
            row = session.get(UserRow, user_id)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            session.commit()
            return _to_user(row)

        return await self._run(work)

    # Posts

    async def get_post(self, post_id: int) -> Post | None:
        def work(session: Session) -> Post | None:
            row = session.get(PostRow, post_id)
            return _to_post(row) if row else None

        return await self._run(work)

    async def get_post_by_slug(self, slug: str) -> Post | None:
        def work(session: Session) -> Post | None:
            row = session.execute(
                select(PostRow).where(PostRow.slug == slug)
            ).scalar_one_or_none()
            return _to_post(row) if row else None

        return await self._run(work)

    async def get_all_posts(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._select_posts(PostFilter(status=status), limit, offset)

    async def get_posts_by_category(
        self,
        category: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        flt = PostFilter(status=status, category=category)
        return await self._select_posts(flt, limit, offset)

    async def create_post(self, data: InsertPost) -> Post:
        base = data.slug or slugify(data.title)
        for _attempt in range(SLUG_RETRIES):
            slug = await unique_slug(base, self._slug_taken())
            fields = new_post_fields(data, slug, utcnow())

            def work(session: Session) -> Post:
                row = PostRow(**fields)
                session.add(row)
                session.commit()
                return _to_post(row)

            try:
                return await self._run(work)
            except IntegrityError:
                # Foreign-key and other violations are not a slug race
                if not await self._slug_taken()(slug):
                    raise
                logger.info("Slug %s was taken concurrently, regenerating", slug)
        raise ConflictError("Could not allocate a unique slug", field="slug")

    async def update_post(self, post_id: int, data: UpdatePost) -> Post | None:
        for _attempt in range(SLUG_RETRIES):
            current = await self.get_post(post_id)
            if current is None:
                return None
            changes = post_update_fields(current, data, utcnow())
            base = requested_slug(current, data)
            if base:
                changes["slug"] = await unique_slug(base, self._slug_taken(exclude_id=post_id))

            def work(session: Session) -> Post | None:
                row = session.get(PostRow, post_id)
                if row is None:
                    return None
                for key, value in changes.items():
                    setattr(row, key, value)
                session.commit()
                return _to_post(row)

            try:
                return await self._run(work)
            except IntegrityError:
                slug = changes.get("slug")
                if slug is None or not await self._slug_taken(exclude_id=post_id)(slug):
                    raise
                logger.info("Slug for post %d was taken concurrently, regenerating", post_id)
        raise ConflictError("Could not allocate a unique slug", field="slug")

    async def delete_post(self, post_id: int) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(delete(PostRow).where(PostRow.id == post_id))
            session.commit()
            return result.rowcount > 0

        return await self._run(work)

    async def search_posts(
        self,
        query: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._select_posts(PostFilter(status=status, query=query), limit, offset)

    async def get_featured_post(self) -> Post | None:
        posts = await self._select_posts(PostFilter(status="published"), 1, 0)
        return posts[0] if posts else None

    async def get_popular_posts(self, limit: int = 5) -> list[Post]:
        return await self._select_posts(PostFilter(status="published"), limit, 0)

    async def get_post_count(
        self,
        status: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> int:
        flt = PostFilter(status=status, category=category, query=query)

        def work(session: Session) -> int:
            stmt = select(func.count()).select_from(PostRow).where(*sql_conditions(flt))
            return session.execute(stmt).scalar_one()

        return await self._run(work)

    # Subscribers

    async def get_subscriber(self, subscriber_id: int) -> Subscriber | None:
        def work(session: Session) -> Subscriber | None:
            row = session.get(SubscriberRow, subscriber_id)
            return _to_subscriber(row) if row else None

        return await self._run(work)

    async def get_subscriber_by_email(self, email: str) -> Subscriber | None:
        def work(session: Session) -> Subscriber | None:
            row = session.execute(
                select(SubscriberRow).where(SubscriberRow.email == email.lower())
            ).scalar_one_or_none()
            return _to_subscriber(row) if row else None

        return await self._run(work)

    async def create_subscriber(self, data: InsertSubscriber) -> Subscriber:
        def work(session: Session) -> Subscriber:
            row = SubscriberRow(email=data.email.lower(), created_at=utcnow())
            session.add(row)
            session.commit()
            return _to_subscriber(row)

        try:
            return await self._run(work)
        except IntegrityError as exc:
            raise ConflictError("Email already subscribed", field="email") from exc

    async def get_all_subscribers(self) -> list[Subscriber]:
        def work(session: Session) -> list[Subscriber]:
            rows = session.execute(
                select(SubscriberRow).order_by(SubscriberRow.created_at, SubscriberRow.id)
            ).scalars()
            return [_to_subscriber(row) for row in rows]

        return await self._run(work)
