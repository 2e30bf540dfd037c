"""Campaign schemas for request/response validation."""
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


# =============================================================================
# Campaign CRUD
# =============================================================================

class CampaignCreate(BaseModel):
    """Create a new campaign (starts as draft)."""
    name: str = Field(..., min_length=1, max_length=200)
    subject: str = Field(..., min_length=1, max_length=300)
    body_html: str = Field(..., min_length=1)
    body_text: str | None = None
    from_email: EmailStr | None = None
    from_name: str | None = Field(None, max_length=200)


class CampaignUpdate(BaseModel):
    """Update a campaign (only draft/testing campaigns can be updated)."""
    name: str | None = Field(None, min_length=1, max_length=200)
    subject: str | None = Field(None, min_length=1, max_length=300)
    body_html: str | None = Field(None, min_length=1)
    body_text: str | None = None
    from_email: EmailStr | None = None
    from_name: str | None = Field(None, max_length=200)


class CampaignResponse(BaseModel):
    """Campaign response."""
    id: UUID
    name: str
    subject: str
    body_html: str
    body_text: str | None
    from_email: str | None
    from_name: str | None
    status: str
    sent_at: datetime | None
    deliverability_test_results: dict | None = None
    created_at: datetime
    updated_at: datetime

    # Stats
    total_sent: int = 0
    total_opens: int = 0
    unique_opens: int = 0
    total_clicks: int = 0
    unique_clicks: int = 0
    total_bounces: int = 0
    total_complaints: int = 0

    model_config = {"from_attributes": True}


class CampaignListItem(BaseModel):
    """Campaign list item (lightweight)."""
    id: UUID
    name: str
    subject: str
    status: str
    sent_at: datetime | None
    total_sent: int = 0
    unique_opens: int = 0
    unique_clicks: int = 0
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Send / Test
# =============================================================================

class SendError(BaseModel):
    recipient: str
    reason: str


class SendSummary(BaseModel):
    """Result of an inline campaign send."""
    status: str = "sent"
    total: int
    sent: int
    failed: int
    skipped: int = 0
    errors: list[SendError] = Field(default_factory=list)


class SendQueued(BaseModel):
    """Large audiences are sent by the worker."""
    status: str = "queued"
    job_id: UUID
    total: int


class MailboxPlacement(BaseModel):
    provider: str
    folder: str


class DeliverabilityResult(BaseModel):
    id: str
    status: str
    tested_at: datetime
    spam_score: int
    passed: bool
    placement: list[MailboxPlacement]
    recommendations: list[str]


# =============================================================================
# Analytics
# =============================================================================

class LinkStat(BaseModel):
    url: str
    clicks: int


class FunnelStage(BaseModel):
    stage: str
    count: int


class TimelinePoint(BaseModel):
    hour: datetime
    opens: int = 0
    clicks: int = 0


class CampaignAnalytics(BaseModel):
    campaign_id: UUID
    status: str
    counters: dict[str, int]
    rates: dict[str, float]
    funnel: list[FunnelStage]
    top_links: list[LinkStat]
    timeline: list[TimelinePoint]


class CounterRecompute(BaseModel):
    campaign_id: UUID
    counters: dict[str, int]
    drift_before: dict[str, Any] = Field(default_factory=dict)
