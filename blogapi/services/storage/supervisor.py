"""Backend selection and runtime fallback to in-memory storage.

The supervisor owns the active backend. It probes the configured primary at
startup, demotes to a freshly seeded ``MemoryStorage`` when the primary
fails, and promotes back only on an explicit recovery or reconnect signal.
Routers and middleware never hold a backend directly; they go through
``SupervisedStorage`` and ``SupervisedSessionStore``, which look up the
active backend on every call.
"""

import asyncio
import contextlib
import logging
import resource
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pymongo.errors import AutoReconnect, ConnectionFailure, ServerSelectionTimeoutError
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from blogapi.config import Settings, storage_backend_kind
from blogapi.models.post import InsertPost, Post, UpdatePost
from blogapi.models.subscriber import InsertSubscriber, Subscriber
from blogapi.models.system import MemoryUsage, SystemStatus
from blogapi.models.user import InsertUser, UpdateUser, User
from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import StorageUnavailable
from blogapi.services.storage.memory import MemoryStorage
from blogapi.services.storage.mongo import MongoStorage
from blogapi.services.storage.posts import utcnow
from blogapi.services.storage.sessions import MemorySessionStore, SessionStore
from blogapi.services.storage.sql import SqlStorage

logger = logging.getLogger(__name__)

_STORAGE_ERRORS = (
    StorageUnavailable,
    TimeoutError,
    ConnectionError,
    ConnectionFailure,
    ServerSelectionTimeoutError,
    AutoReconnect,
    OperationalError,
    InterfaceError,
    DisconnectionError,
)


class StorageState(str, Enum):
    UNCONFIGURED = "unconfigured"
    PROBING = "probing"
    MEMORY = "memory"
    PRIMARY = "primary"


def classify_storage_error(exc: BaseException) -> bool:
    """Return True if ``exc`` means the storage provider is unreachable."""
    return isinstance(exc, _STORAGE_ERRORS)


def create_primary_backend(kind: str, settings: Settings) -> Storage:
    """Build (but do not connect) the durable backend for a URL kind."""
    if kind == "document":
        return MongoStorage(
            settings.storage_url,
            database=settings.storage_database,
            connect_timeout=settings.storage_connect_timeout,
            session_ttl=settings.session_ttl_seconds,
            admin_username=settings.admin_username,
            admin_password=settings.admin_password,
        )
    if kind == "relational":
        return SqlStorage(
            settings.storage_url,
            connect_timeout=settings.storage_connect_timeout,
            session_ttl=settings.session_ttl_seconds,
            admin_username=settings.admin_username,
            admin_password=settings.admin_password,
        )
    raise ValueError(f"Unknown storage backend kind: {kind}")


def memory_usage() -> MemoryUsage:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return MemoryUsage(
        max_rss_kb=usage.ru_maxrss,
        user_cpu_seconds=round(usage.ru_utime, 3),
        system_cpu_seconds=round(usage.ru_stime, 3),
    )


class HealthSupervisor:
    """Owns the active backend and every transition between backends.

    State machine::

        unconfigured -> probing -> primary | memory
        primary -> memory       (report_failure, failed health check, driver event)
        memory -> primary       (report_recovery, reconnect)

    An unusable URL goes straight to ``memory`` and stays there. Transitions
    run on the event loop without awaiting, so readers never see a
    half-switched state.
    """

    def __init__(
        self,
        settings: Settings,
        backend_factory: Callable[[str, Settings], Storage] = create_primary_backend,
    ) -> None:
        self._settings = settings
        self._backend_factory = backend_factory
        self.state = StorageState.UNCONFIGURED
        self._primary: Storage | None = None
        self._memory: MemoryStorage | None = None
        self._active: Storage | None = None
        # Non-None while sessions are demoted independently of the data backend
        self._session_fallback: MemorySessionStore | None = None
        self._reconnect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self.started_at = utcnow()
        self._started_monotonic = time.monotonic()
        self.last_transition_at = self.started_at
        self.last_error: str | None = None
        self.storage = SupervisedStorage(self)
        self.sessions = SupervisedSessionStore(self)

    @property
    def configured_kind(self) -> str | None:
        return storage_backend_kind(self._settings.storage_url)

    @property
    def operation_timeout(self) -> float:
        return self._settings.storage_operation_timeout

    # Lifecycle

    async def start(self) -> StorageState:
        """Select the backend for this process: probe the primary or use memory."""
        kind = self.configured_kind
        if kind is None:
            if self._settings.storage_url:
                reason = "unrecognised STORAGE_URL scheme"
            else:
                reason = "STORAGE_URL not set"
            self._activate_memory(reason)
            return self.state

        self._transition(StorageState.PROBING)
        primary = self._primary or self._backend_factory(kind, self._settings)
        if await self._probe(primary):
            self._promote(primary)
        else:
            self._primary = primary
            primary.on_connection_change = self._on_connection_change
            self._activate_memory(f"{kind} storage unreachable at startup: {self.last_error}")
        return self.state

    async def stop(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
            # Let an in-flight probe unwind before the primary is closed
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._primary is not None:
            await self._primary.close()

    async def _probe(self, primary: Storage) -> bool:
        """Race bounded connection attempts against the overall deadline."""
        settings = self._settings

        async def attempts() -> bool:
            for attempt in range(1, settings.storage_connect_retries + 1):
                try:
                    await asyncio.wait_for(
                        primary.connect(), timeout=settings.storage_connect_timeout
                    )
                    return True
                except Exception as e:
                    self.last_error = str(e) or type(e).__name__
                    logger.warning(
                        "Storage probe attempt %d/%d failed: %s",
                        attempt,
                        settings.storage_connect_retries,
                        self.last_error,
                    )
                if attempt < settings.storage_connect_retries:
                    await asyncio.sleep(settings.storage_retry_backoff)
            return False

        try:
            return await asyncio.wait_for(
                attempts(), timeout=settings.storage_probe_deadline
            )
        except TimeoutError:
            self.last_error = (
                f"probe deadline of {settings.storage_probe_deadline}s exceeded"
            )
            logger.warning("Storage probe gave up: %s", self.last_error)
            return False

    # Transitions

    def _transition(self, state: StorageState) -> None:
        self.state = state
        self.last_transition_at = utcnow()

    def _promote(self, primary: Storage) -> None:
        self._primary = primary
        self._active = primary
        self._memory = None
        self._session_fallback = None
        primary.on_connection_change = self._on_connection_change
        self._transition(StorageState.PRIMARY)
        logger.info("Using %s storage backend", primary.kind)

    def _activate_memory(self, reason: str) -> None:
        self.last_error = reason
        self._memory = MemoryStorage(
            admin_username=self._settings.admin_username,
            admin_password=self._settings.admin_password,
            session_ttl=self._settings.session_ttl_seconds,
        )
        self._active = self._memory
        self._session_fallback = None
        self._transition(StorageState.MEMORY)
        logger.warning("Using in-memory storage backend (%s); data will not persist", reason)

    def report_failure(self, reason: str, backend: Storage | None = None) -> bool:
        """Demote to a fresh in-memory backend. Returns True if this call switched.

        Reports about a backend that is no longer active are ignored, so many
        requests failing at once cause a single demotion.
        """
        if self.state is not StorageState.PRIMARY:
            return False
        if backend is not None and backend is not self._active:
            return False
        logger.warning("Primary %s storage failed: %s", self._active.kind, reason)
        self._activate_memory(reason)
        return True

    def report_recovery(self) -> bool:
        """Promote the known primary back once it reports ready.

        Whatever was written to the in-memory backend meanwhile is discarded.
        """
        if self.state is not StorageState.MEMORY or self._primary is None:
            return False
        if not self._primary.is_ready():
            return False
        logger.info("Primary %s storage recovered, leaving in-memory backend", self._primary.kind)
        self._promote(self._primary)
        return True

    async def reconnect(self) -> bool:
        """Explicit reconnect: re-probe the primary and promote on success."""
        kind = self.configured_kind
        if kind is None:
            logger.info("Reconnect requested but no usable STORAGE_URL is configured")
            return False
        async with self._reconnect_lock:
            if self.state is StorageState.PRIMARY and self._active.is_ready():
                return True
            primary = self._primary or self._backend_factory(kind, self._settings)
            self._primary = primary
            primary.on_connection_change = self._on_connection_change
            if not await self._probe(primary):
                logger.warning("Reconnect to %s storage failed", kind)
                return False
            if self.state is StorageState.PRIMARY:
                return True
            logger.info("Reconnected to %s storage", kind)
            self._promote(primary)
            return True

    def _on_connection_change(self, ok: bool) -> None:
        """Driver connection events, delivered on the event loop."""
        if not ok:
            self.report_failure("driver reported the connection as lost")
        elif self.state is StorageState.MEMORY:
            # Reconnect rather than promote directly: the primary may never
            # have finished its bootstrap.
            if self._reconnect_task is None or self._reconnect_task.done():
                self._reconnect_task = asyncio.get_running_loop().create_task(
                    self.reconnect()
                )

    def check_health(self) -> StorageState:
        """Per-request check: demote if the primary no longer reports ready."""
        if self.state is StorageState.PRIMARY and not self._active.is_ready():
            self.report_failure("connection not ready")
        return self.state

    # Accessors

    def current_backend(self) -> Storage:
        if self._active is None:
            raise StorageUnavailable("storage has not been started")
        return self._active

    def current_session_store(self) -> SessionStore:
        if self._session_fallback is not None:
            return self._session_fallback
        return self.current_backend().sessions

    def report_session_failure(self, reason: str, store: SessionStore | None = None) -> bool:
        """Move sessions to an in-process store, leaving the data backend alone."""
        if self._session_fallback is not None:
            return False
        current = self.current_session_store()
        if store is not None and store is not current:
            return False
        if current.kind == "memory":
            return False
        logger.warning(
            "Session store %s failed: %s; using in-process sessions", current.kind, reason
        )
        self._session_fallback = MemorySessionStore(
            ttl_seconds=self._settings.session_ttl_seconds
        )
        return True

    def status(self) -> SystemStatus:
        active = self._active
        return SystemStatus(
            backend=active.kind if active else "none",
            state=self.state.value,
            configured_backend=self.configured_kind,
            connected=bool(active and active.is_ready()),
            session_store=self.current_session_store().kind if active else "none",
            uptime_seconds=round(time.monotonic() - self._started_monotonic, 3),
            started_at=self.started_at,
            last_transition_at=self.last_transition_at,
            last_error=self.last_error,
            memory=memory_usage(),
        )

    async def guard(self, call: Callable[[Storage], Awaitable[Any]]) -> Any:
        """Run ``call`` on the active backend, failing over once to memory."""
        backend = self.current_backend()
        try:
            return await self._bounded(call(backend), backend.kind)
        except Exception as e:
            if backend.kind == "memory" or not classify_storage_error(e):
                raise
            self.report_failure(f"{type(e).__name__}: {e}", backend)
            fallback = self.current_backend()
            if fallback is backend:
                raise
            logger.info("Retrying storage call on the %s backend", fallback.kind)
            return await call(fallback)

    async def guard_sessions(self, call: Callable[[SessionStore], Awaitable[Any]]) -> Any:
        """Session-store counterpart of ``guard``; demotes sessions only."""
        store = self.current_session_store()
        try:
            return await self._bounded(call(store), store.kind)
        except Exception as e:
            if store.kind == "memory" or not classify_storage_error(e):
                raise
            self.report_session_failure(f"{type(e).__name__}: {e}", store)
            fallback = self.current_session_store()
            if fallback is store:
                raise
            return await call(fallback)

    async def _bounded(self, awaitable: Awaitable[Any], kind: str) -> Any:
        if kind == "memory":
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)


class SupervisedSessionStore(SessionStore):
    """Session store facade that follows the supervisor's session backend."""

    def __init__(self, supervisor: HealthSupervisor) -> None:
        self._supervisor = supervisor

    @property
    def kind(self) -> str:
        return self._supervisor.current_session_store().kind

    async def get(self, sid: str) -> dict[str, Any] | None:
        return await self._supervisor.guard_sessions(lambda s: s.get(sid))

    async def set(self, sid: str, data: dict[str, Any]) -> None:
        await self._supervisor.guard_sessions(lambda s: s.set(sid, data))

    async def destroy(self, sid: str) -> None:
        await self._supervisor.guard_sessions(lambda s: s.destroy(sid))

    async def prune(self) -> int:
        return await self._supervisor.guard_sessions(lambda s: s.prune())


class SupervisedStorage(Storage):
    """Storage facade that routes every call to the currently active backend."""

    def __init__(self, supervisor: HealthSupervisor) -> None:
        self._supervisor = supervisor

    @property
    def kind(self) -> str:
        return self._supervisor.current_backend().kind

    @property
    def sessions(self) -> SessionStore:
        return self._supervisor.sessions

    def is_ready(self) -> bool:
        return self._supervisor.current_backend().is_ready()

    async def _call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return await self._supervisor.guard(
            lambda backend: getattr(backend, name)(*args, **kwargs)
        )

    async def get_user(self, user_id: int) -> User | None:
        return await self._call("get_user", user_id)

    async def get_user_by_username(self, username: str) -> User | None:
        return await self._call("get_user_by_username", username)

    async def create_user(self, data: InsertUser) -> User:
        return await self._call("create_user", data)

    async def update_user(self, user_id: int, data: UpdateUser) -> User | None:
        return await self._call("update_user", user_id, data)

    async def get_post(self, post_id: int) -> Post | None:
        return await self._call("get_post", post_id)

    async def get_post_by_slug(self, slug: str) -> Post | None:
        return await self._call("get_post_by_slug", slug)

    async def get_all_posts(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._call("get_all_posts", status=status, limit=limit, offset=offset)

    async def get_posts_by_category(
        self,
        category: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._call(
            "get_posts_by_category", category, status=status, limit=limit, offset=offset
        )

    async def create_post(self, data: InsertPost) -> Post:
        return await self._call("create_post", data)

    async def update_post(self, post_id: int, data: UpdatePost) -> Post | None:
        return await self._call("update_post", post_id, data)

    async def delete_post(self, post_id: int) -> bool:
        return await self._call("delete_post", post_id)

    async def search_posts(
        self,
        query: str,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Post]:
        return await self._call("search_posts", query, status=status, limit=limit, offset=offset)

    async def get_featured_post(self) -> Post | None:
        return await self._call("get_featured_post")

    async def get_popular_posts(self, limit: int = 5) -> list[Post]:
        return await self._call("get_popular_posts", limit=limit)

    async def get_post_count(
        self,
        status: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> int:
        return await self._call("get_post_count", status=status, category=category, query=query)

    async def get_subscriber(self, subscriber_id: int) -> Subscriber | None:
        return await self._call("get_subscriber", subscriber_id)

    async def get_subscriber_by_email(self, email: str) -> Subscriber | None:
        return await self._call("get_subscriber_by_email", email)

    async def create_subscriber(self, data: InsertSubscriber) -> Subscriber:
        return await self._call("create_subscriber", data)

    async def get_all_subscribers(self) -> list[Subscriber]:
        return await self._call("get_all_subscribers")
