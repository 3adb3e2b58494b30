"""Pluggable persistence: memory, document-store and relational backends."""

from blogapi.services.storage.base import Storage
from blogapi.services.storage.errors import (
    ConflictError,
    StorageError,
    StorageUnavailable,
)
from blogapi.services.storage.memory import MemoryStorage
from blogapi.services.storage.mongo import MongoStorage
from blogapi.services.storage.sessions import MemorySessionStore, SessionStore
from blogapi.services.storage.sql import SqlStorage
from blogapi.services.storage.supervisor import (
    HealthSupervisor,
    StorageState,
    SupervisedSessionStore,
    SupervisedStorage,
    classify_storage_error,
    create_primary_backend,
)

__all__ = [
    "ConflictError",
    "HealthSupervisor",
    "MemorySessionStore",
    "MemoryStorage",
    "MongoStorage",
    "SessionStore",
    "SqlStorage",
    "Storage",
    "StorageError",
    "StorageState",
    "StorageUnavailable",
    "SupervisedSessionStore",
    "SupervisedStorage",
    "classify_storage_error",
    "create_primary_backend",
]
