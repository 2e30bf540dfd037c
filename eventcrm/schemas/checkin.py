"""Check-in schemas."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class ContactSummary(BaseModel):
    id: UUID
    first_name: str | None
    last_name: str | None
    email: str

    model_config = {"from_attributes": True}


class ValidateRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    event_id: UUID
    checked_in_by: str | None = Field(None, max_length=100)


class CheckinResponse(BaseModel):
    status: str
    attendance_id: UUID
    checked_in_at: datetime | None
    contact: ContactSummary


class SearchRequest(BaseModel):
    query: str = Field(..., max_length=200)
    event_id: UUID


class AttendanceResponse(BaseModel):
    id: UUID
    event_id: UUID
    status: str
    registered_at: datetime
    checked_in_at: datetime | None
    checked_in_by: str | None
    contact: ContactSummary

    model_config = {"from_attributes": True}


class SearchResponse(BaseModel):
    results: list[AttendanceResponse]


class AttendanceStats(BaseModel):
    event_id: UUID
    registered: int
    checked_in: int
    cancelled: int
    total: int
