"""Operational status models."""

from datetime import datetime

from blogapi.models.base import CamelModel


class MemoryUsage(CamelModel):
    max_rss_kb: int
    user_cpu_seconds: float
    system_cpu_seconds: float


class SystemStatus(CamelModel):
    """Projection of the storage supervisor state for the admin dashboard."""

    backend: str
    state: str
    configured_backend: str | None = None
    connected: bool
    session_store: str
    uptime_seconds: float
    started_at: datetime
    last_transition_at: datetime
    last_error: str | None = None
    memory: MemoryUsage


class HealthStatus(CamelModel):
    status: str
    service: str
    version: str
    checks: dict[str, str]
