"""Contact schemas (admin create and bulk import)."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class ContactCreate(BaseModel):
    email: EmailStr
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    tags: list[str] = Field(default_factory=list)
    unsubscribed: bool = False


class ContactImportRow(BaseModel):
    """One imported row. Rows with a missing or malformed email are skipped, not rejected."""
    email: str | None = Field(None, max_length=320)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    tags: list[str] = Field(default_factory=list)


class ContactImportRequest(BaseModel):
    contacts: list[ContactImportRow] = Field(..., max_length=5000)


class ContactImportResult(BaseModel):
    imported: int
    requested: int


class ContactRead(BaseModel):
    id: UUID
    email: str
    first_name: str | None
    last_name: str | None
    phone: str | None
    tags: list[str]
    unsubscribed: bool
    engagement_score: int
    created_at: datetime

    model_config = {"from_attributes": True}
