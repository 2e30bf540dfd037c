"""Email campaign, event log and link click models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from eventcrm.db.base import Base, JSONType
from eventcrm.db.enums import CampaignStatus
from eventcrm.utils.datetime_utils import utcnow


class Campaign(Base):
    """
    Bulk email campaign.

    The ``total_*``/``unique_*`` columns are a cache derived from
    ``email_events``; they are only ever bumped atomically and can be rebuilt
    with ``email_event_service.recompute_campaign_counters``.
    """

    __tablename__ = "email_campaigns"
    __table_args__ = (Index("idx_email_campaigns_status", "status", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subject: Mapped[str] = mapped_column(String(300), nullable=False)
    body_html: Mapped[str] = mapped_column(Text, nullable=False)
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    from_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=CampaignStatus.DRAFT.value, nullable=False
    )
    deliverability_test_results: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True
    )
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Aggregate counters
    total_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_opens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_opens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_bounces: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_complaints: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class EmailEvent(Base):
    """
    Append-only log of delivery signals (send, webhook, pixel).

    ``is_unique`` marks the first occurrence of a type for a
    (campaign, contact) pair; the partial unique index guarantees there is
    only one. ``dedup_key`` is derived from the provider payload so a
    redelivered webhook cannot be recorded twice.
    """

    __tablename__ = "email_events"
    __table_args__ = (
        Index(
            "uq_email_events_first_occurrence",
            "campaign_id",
            "contact_id",
            "event_type",
            unique=True,
            postgresql_where=text("is_unique"),
            sqlite_where=text("is_unique"),
        ),
        Index("idx_email_events_campaign_type", "campaign_id", "event_type"),
        Index("idx_email_events_contact_type", "contact_id", "event_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("email_campaigns.id", ondelete="SET NULL"), nullable=True
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_unique: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dedup_key: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    event_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )


class LinkClick(Base):
    """One tracked link click, kept for top-links reporting."""

    __tablename__ = "email_link_clicks"
    __table_args__ = (Index("idx_link_clicks_campaign", "campaign_id", "link_url"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("email_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    link_url: Mapped[str] = mapped_column(Text, nullable=False)
    clicked_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
