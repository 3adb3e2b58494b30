"""Newsletter subscriber models."""

from datetime import datetime

from pydantic import EmailStr, field_validator

from blogapi.models.base import CamelModel


class Subscriber(CamelModel):
    id: int
    email: str
    created_at: datetime


class InsertSubscriber(CamelModel):
    """Subscribe form. Emails are stored lower-cased."""

    email: EmailStr

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()
