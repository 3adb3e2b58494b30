"""Application configuration via environment variables."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

# URL schemes accepted for STORAGE_URL, grouped by backend kind.
DOCUMENT_URL_PREFIXES = ("mongodb://", "mongodb+srv://")
RELATIONAL_URL_PREFIXES = (
    "postgresql://",
    "postgresql+psycopg2://",
    "postgres://",
    "sqlite://",
)


def storage_backend_kind(url: str | None) -> str | None:
    """Return "document", "relational" or None for an unusable URL."""
    if not url or not url.strip():
        return None
    url = url.strip()
    if url.startswith(DOCUMENT_URL_PREFIXES):
        return "document"
    if url.startswith(RELATIONAL_URL_PREFIXES):
        return "relational"
    return None


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App
    debug: bool = False
    environment: str = "development"

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:8000",
    ]

    # Storage: empty or unrecognised URL means in-memory only
    storage_url: str = ""
    storage_database: str = "blog"
    storage_connect_timeout: float = 5.0
    storage_probe_deadline: float = 10.0
    storage_connect_retries: int = 3
    storage_retry_backoff: float = 2.0
    storage_operation_timeout: float = 15.0

    # Sessions
    session_ttl_days: int = 14
    session_cookie_name: str = "sid"

    # Seeded administrator (change the password in production)
    admin_username: str = "admin"
    admin_password: str = "admin123"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("storage_url")
    @classmethod
    def strip_storage_url(cls, v: str) -> str:
        return v.strip()

    @field_validator(
        "storage_connect_timeout",
        "storage_probe_deadline",
        "storage_operation_timeout",
    )
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0 or v > 300:
            raise ValueError("storage timeouts must be greater than 0 and at most 300")
        return v

    @field_validator("storage_connect_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("storage_connect_retries must be between 1 and 10")
        return v

    @field_validator("storage_retry_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 0 or v > 60:
            raise ValueError("storage_retry_backoff must be between 0 and 60")
        return v

    @field_validator("session_ttl_days")
    @classmethod
    def validate_session_ttl(cls, v: int) -> int:
        if v < 1 or v > 30:
            raise ValueError("session_ttl_days must be between 1 and 30")
        return v

    @property
    def storage_kind(self) -> str | None:
        return storage_backend_kind(self.storage_url)

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
