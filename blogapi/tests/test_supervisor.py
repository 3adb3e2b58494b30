"""Tests for backend selection, fallback and recovery."""

import asyncio

import pytest
from pymongo.errors import ServerSelectionTimeoutError
from sqlalchemy.exc import OperationalError

from blogapi.config import Settings
from blogapi.models.post import InsertPost
from blogapi.models.user import InsertUser
from blogapi.services.storage.errors import ConflictError, StorageUnavailable
from blogapi.services.storage.memory import MemoryStorage
from blogapi.services.storage.sessions import MemorySessionStore
from blogapi.services.storage.supervisor import (
    HealthSupervisor,
    StorageState,
    classify_storage_error,
)


class FlakySessions(MemorySessionStore):
    kind = "relational"

    def __init__(self) -> None:
        super().__init__(ttl_seconds=60)
        self.down = False

    async def get(self, sid):
        if self.down:
            raise StorageUnavailable("sessions table unreachable")
        return await super().get(sid)


class FlakyStorage(MemoryStorage):
    """A 'durable' backend whose availability the test controls."""

    kind = "relational"

    def __init__(self, failed_connects: int = 0, hang: bool = False) -> None:
        super().__init__(with_samples=False)
        self.failed_connects = failed_connects
        self.hang = hang
        self.connect_calls = 0
        self.ready = False
        self.down = False
        self.slow = False
        self._flaky_sessions = FlakySessions()

    @property
    def sessions(self):
        return self._flaky_sessions

    async def connect(self):
        self.connect_calls += 1
        if self.hang:
            await asyncio.sleep(30)
        if self.failed_connects > 0:
            self.failed_connects -= 1
            raise StorageUnavailable("connection refused")
        self.ready = True

    def is_ready(self):
        return self.ready

    async def get_featured_post(self):
        if self.down:
            raise StorageUnavailable("connection reset")
        if self.slow:
            await asyncio.sleep(30)
        return await super().get_featured_post()

    async def create_post(self, data):
        if self.down:
            raise OperationalError("INSERT", {}, Exception("server closed the connection"))
        return await super().create_post(data)

    async def get_post(self, post_id):
        raise ValueError("bug in query code")


def make_settings(**overrides) -> Settings:
    values = {
        "_env_file": None,
        "storage_url": "postgresql://blog:pw@db.invalid/blog",
        "storage_connect_timeout": 0.5,
        "storage_probe_deadline": 2.0,
        "storage_connect_retries": 3,
        "storage_retry_backoff": 0,
        "storage_operation_timeout": 0.05,
    }
    values.update(overrides)
    return Settings(**values)


async def start_with(primary, **overrides) -> HealthSupervisor:
    supervisor = HealthSupervisor(make_settings(**overrides), backend_factory=lambda kind, s: primary)
    await supervisor.start()
    return supervisor


def test_initial_state_is_unconfigured():
    supervisor = HealthSupervisor(make_settings())
    assert supervisor.state is StorageState.UNCONFIGURED
    with pytest.raises(StorageUnavailable):
        supervisor.current_backend()


@pytest.mark.parametrize("url", ["", "   ", "redis://cache:6379", "http://db"])
async def test_missing_or_unknown_url_uses_memory_without_probe(url, mocker):
    factory = mocker.Mock()
    supervisor = HealthSupervisor(make_settings(storage_url=url), backend_factory=factory)

    assert await supervisor.start() is StorageState.MEMORY

    factory.assert_not_called()
    assert isinstance(supervisor.current_backend(), MemoryStorage)
    featured = await supervisor.storage.get_featured_post()
    assert featured is not None
    assert await supervisor.reconnect() is False


async def test_probe_success_activates_primary():
    primary = FlakyStorage()
    supervisor = await start_with(primary)

    assert supervisor.state is StorageState.PRIMARY
    assert supervisor.current_backend() is primary
    assert supervisor.storage.kind == "relational"


async def test_probe_retries_until_success():
    primary = FlakyStorage(failed_connects=2)
    supervisor = await start_with(primary)

    assert supervisor.state is StorageState.PRIMARY
    assert primary.connect_calls == 3


async def test_probe_gives_up_after_retries():
    primary = FlakyStorage(failed_connects=5)
    supervisor = await start_with(primary, storage_connect_retries=2)

    assert supervisor.state is StorageState.MEMORY
    assert primary.connect_calls == 2
    assert "connection refused" in supervisor.last_error
    assert isinstance(supervisor.current_backend(), MemoryStorage)


async def test_probe_deadline_wins_the_race():
    primary = FlakyStorage(hang=True)
    supervisor = await start_with(
        primary, storage_connect_timeout=5.0, storage_probe_deadline=0.1
    )

    assert supervisor.state is StorageState.MEMORY
    assert "deadline" in supervisor.last_error


async def test_storage_error_fails_over_and_serves_request():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.down = True

    featured = await supervisor.storage.get_featured_post()

    assert supervisor.state is StorageState.MEMORY
    assert featured is not None  # served by freshly seeded memory backend
    assert supervisor.current_backend() is not primary


async def test_fallback_is_idempotent():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.down = True

    await supervisor.storage.get_featured_post()
    fallback = supervisor.current_backend()

    assert supervisor.report_failure("again", primary) is False
    assert supervisor.report_failure("again") is False
    for _ in range(3):
        assert await supervisor.storage.get_featured_post() is not None
    assert supervisor.current_backend() is fallback
    assert await supervisor.storage.get_user_by_username("admin") is not None


async def test_driver_error_classified_and_write_retried_on_memory():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.down = True

    post = await supervisor.storage.create_post(
        InsertPost(title="Written during outage", excerpt="E", content="C", category="Tech News")
    )

    assert supervisor.state is StorageState.MEMORY
    assert await supervisor.storage.get_post(post.id) == post


async def test_operation_timeout_demotes():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.slow = True

    assert await supervisor.storage.get_featured_post() is not None
    assert supervisor.state is StorageState.MEMORY


async def test_non_storage_errors_propagate_without_demotion():
    primary = FlakyStorage()
    supervisor = await start_with(primary)

    with pytest.raises(ValueError):
        await supervisor.storage.get_post(1)
    with pytest.raises(ConflictError):
        await supervisor.storage.create_user(InsertUser(username="admin", password="h" * 20))
    assert supervisor.state is StorageState.PRIMARY


async def test_health_check_demotes_when_not_ready():
    primary = FlakyStorage()
    supervisor = await start_with(primary)

    assert supervisor.check_health() is StorageState.PRIMARY
    primary.ready = False
    assert supervisor.check_health() is StorageState.MEMORY


async def test_driver_disconnect_event_demotes_and_reconnect_promotes():
    primary = FlakyStorage()
    supervisor = await start_with(primary)

    primary.ready = False
    primary.on_connection_change(False)
    assert supervisor.state is StorageState.MEMORY

    primary.on_connection_change(True)
    await asyncio.sleep(0.05)

    assert supervisor.state is StorageState.PRIMARY
    assert supervisor.current_backend() is primary


async def test_stop_waits_for_in_flight_reconnect():
    primary = FlakyStorage(failed_connects=1)
    supervisor = await start_with(
        primary,
        storage_connect_retries=1,
        storage_connect_timeout=30,
        storage_probe_deadline=60,
    )
    assert supervisor.state is StorageState.MEMORY

    primary.hang = True
    primary.on_connection_change(True)
    await asyncio.sleep(0.01)
    task = supervisor._reconnect_task
    assert task is not None and not task.done()

    reconnect_done_at_close = []

    async def close():
        reconnect_done_at_close.append(task.done())

    primary.close = close
    await supervisor.stop()

    assert task.cancelled()
    assert reconnect_done_at_close == [True]


async def test_report_recovery_requires_ready_primary():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.ready = False
    supervisor.check_health()

    assert supervisor.report_recovery() is False
    primary.ready = True
    assert supervisor.report_recovery() is True
    assert supervisor.state is StorageState.PRIMARY


async def test_memory_does_not_auto_promote():
    primary = FlakyStorage(failed_connects=10)
    supervisor = await start_with(primary, storage_connect_retries=1)
    assert supervisor.state is StorageState.MEMORY

    primary.failed_connects = 0
    supervisor.check_health()
    assert supervisor.state is StorageState.MEMORY

    assert await supervisor.reconnect() is True
    assert supervisor.state is StorageState.PRIMARY


async def test_reconnect_failure_keeps_memory():
    primary = FlakyStorage(failed_connects=10)
    supervisor = await start_with(primary, storage_connect_retries=1)

    assert await supervisor.reconnect() is False
    assert supervisor.state is StorageState.MEMORY


async def test_session_failure_demotes_sessions_only():
    primary = FlakyStorage()
    supervisor = await start_with(primary)
    primary.sessions.down = True

    assert await supervisor.sessions.get("sid-1") is None

    assert supervisor.state is StorageState.PRIMARY
    assert supervisor.sessions.kind == "memory"
    await supervisor.sessions.set("sid-2", {"userId": 1})
    assert await supervisor.sessions.get("sid-2") == {"userId": 1}


async def test_status_snapshot():
    primary = FlakyStorage()
    supervisor = await start_with(primary)

    status = supervisor.status()

    assert status.backend == "relational"
    assert status.state == "primary"
    assert status.configured_backend == "relational"
    assert status.connected is True
    assert status.session_store == "relational"
    assert status.uptime_seconds >= 0
    assert status.memory.max_rss_kb > 0
    body = status.model_dump(by_alias=True)
    assert "uptimeSeconds" in body and "sessionStore" in body


@pytest.mark.parametrize(
    "exc,expected",
    [
        (StorageUnavailable("down"), True),
        (TimeoutError(), True),
        (ConnectionRefusedError(), True),
        (ServerSelectionTimeoutError("no servers"), True),
        (OperationalError("SELECT 1", {}, Exception("gone")), True),
        (ConflictError("dup", field="email"), False),
        (ValueError("bad"), False),
    ],
)
def test_classify_storage_error(exc, expected):
    assert classify_storage_error(exc) is expected
