"""Registration schemas."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator


class RegistrationRequest(BaseModel):
    """Public event sign-up form."""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(None, max_length=50)
    agree_updates: bool = False
    event_id: UUID | None = None
    event_slug: str | None = Field(None, max_length=120)

    @model_validator(mode="after")
    def require_event(self) -> "RegistrationRequest":
        if not self.event_id and not self.event_slug:
            raise ValueError("event_id or event_slug is required")
        return self


class RegistrationResponse(BaseModel):
    success: bool = True
    contact_id: UUID
    attendance_id: UUID


class EventPublic(BaseModel):
    """Event details shown on the public registration page."""
    id: UUID
    slug: str
    name: str
    description: str | None
    event_date: datetime
    location: str | None
    capacity: int | None
    registration_open: bool

    model_config = {"from_attributes": True}


class EventCreate(BaseModel):
    slug: str = Field(..., min_length=1, max_length=120, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    event_date: datetime
    location: str | None = Field(None, max_length=300)
    capacity: int | None = Field(None, ge=1)
    registration_open: bool = True
