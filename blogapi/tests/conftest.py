"""Shared fixtures for blog API tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from blogapi.services.storage.memory import MemoryStorage
from blogapi.services.storage.supervisor import HealthSupervisor

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin123"


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Reset module-level singletons and caches between tests."""
    yield

    # Settings LRU cache
    from blogapi.config import get_settings

    get_settings.cache_clear()


@pytest.fixture
def mock_settings(monkeypatch):
    """Provide a Settings object with safe test defaults (in-memory storage)."""
    from blogapi.config import Settings, get_settings

    test_settings = Settings(
        _env_file=None,
        storage_url="",
        storage_connect_timeout=0.5,
        storage_probe_deadline=1.0,
        storage_connect_retries=2,
        storage_retry_backoff=0,
        storage_operation_timeout=1.0,
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
    )

    get_settings.cache_clear()
    monkeypatch.setattr("blogapi.config.get_settings", lambda: test_settings)

    # Modules that imported get_settings directly keep their own binding
    for mod_path in [
        "blogapi.main",
        "blogapi.dependencies",
        "blogapi.routers.auth",
    ]:
        monkeypatch.setattr(f"{mod_path}.get_settings", lambda: test_settings)

    return test_settings


@pytest.fixture
def memory_storage():
    """Empty in-memory backend (admin only, no sample posts)."""
    return MemoryStorage(
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        with_samples=False,
    )


@pytest.fixture
async def supervisor(mock_settings):
    """Started supervisor; no STORAGE_URL, so it runs on seeded memory storage."""
    sup = HealthSupervisor(mock_settings)
    await sup.start()
    yield sup
    await sup.stop()


@pytest.fixture
async def client(supervisor):
    from blogapi.main import create_app

    app = create_app(supervisor)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
async def admin_client(client):
    """Client holding an admin session cookie."""
    response = await client.post(
        "/api/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return client
