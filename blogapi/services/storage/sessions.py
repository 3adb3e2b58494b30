"""Login session stores.

Each backend exposes one of these through ``Storage.sessions``; the health
supervisor wraps the active one so a session-store failure is tracked
separately from a data-store failure.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from blogapi.services.cache import TTLCache

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Persist login sessions keyed by an opaque session id."""

    kind: str = "abstract"

    @abstractmethod
    async def get(self, sid: str) -> dict[str, Any] | None:
        """Return the session data, or None if missing or expired."""

    @abstractmethod
    async def set(self, sid: str, data: dict[str, Any]) -> None:
        """Create or replace a session, restarting its lifetime."""

    @abstractmethod
    async def destroy(self, sid: str) -> None:
        """Delete a session if it exists."""

    @abstractmethod
    async def prune(self) -> int:
        """Remove expired sessions; return how many were dropped."""


class MemorySessionStore(SessionStore):
    """Process-local sessions with periodic pruning of expired entries."""

    kind = "memory"

    # Prune expired sessions every N writes
    PRUNE_EVERY = 100

    def __init__(self, ttl_seconds: float, max_sessions: int = 10_000) -> None:
        self._cache = TTLCache(ttl=ttl_seconds, max_size=max_sessions)
        self._writes = 0

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, sid: str) -> dict[str, Any] | None:
        return self._cache.get(sid)

    async def set(self, sid: str, data: dict[str, Any]) -> None:
        self._cache.set(sid, dict(data))
        self._writes += 1
        if self._writes % self.PRUNE_EVERY == 0:
            await self.prune()

    async def destroy(self, sid: str) -> None:
        self._cache.delete(sid)

    async def prune(self) -> int:
        removed = self._cache.prune()
        if removed:
            logger.debug("Pruned %d expired sessions", removed)
        return removed
