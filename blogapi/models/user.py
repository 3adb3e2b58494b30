"""User data models."""

from pydantic import Field, field_validator

from blogapi.models.base import CamelModel


class User(CamelModel):
    """A stored user account.

    ``password`` holds the ``<hash>.<salt>`` string and is excluded from
    every serialisation so it never leaves the process by accident.
    """

    id: int
    username: str
    password: str = Field(..., exclude=True, repr=False)
    display_name: str | None = None
    profile_image: str | None = None
    is_admin: bool = False


class PublicUser(CamelModel):
    """User as returned by the API."""

    id: int
    username: str
    display_name: str | None = None
    profile_image: str | None = None
    is_admin: bool = False


class InsertUser(CamelModel):
    """Payload for creating a user; ``password`` is already hashed by the caller."""

    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6)
    display_name: str | None = Field(None, max_length=100)
    profile_image: str | None = None
    is_admin: bool = False

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()


class UpdateUser(CamelModel):
    """Partial user update."""

    display_name: str | None = Field(None, max_length=100)
    profile_image: str | None = None
    password: str | None = Field(None, min_length=6)


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=100)


class RegisterUserRequest(CamelModel):
    """Admin-submitted registration form (plain-text password)."""

    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=100)
    display_name: str | None = Field(None, max_length=100)
    profile_image: str | None = None
    is_admin: bool = False


class UpdateProfileRequest(CamelModel):
    """Self-service profile change (plain-text password)."""

    display_name: str | None = Field(None, max_length=100)
    profile_image: str | None = None
    password: str | None = Field(None, min_length=6, max_length=100)
