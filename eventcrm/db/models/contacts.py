"""Contact model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from eventcrm.db.base import Base, JSONType
from eventcrm.utils.datetime_utils import utcnow


class Contact(Base):
    """
    A person known to the CRM.

    Email is the natural key and is stored lowercased, so lookups are
    case-insensitive by construction. Contacts are never hard-deleted;
    opting out flips ``unsubscribed``.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("idx_contacts_unsubscribed", "unsubscribed", "id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    unsubscribed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    engagement_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )

    # Opaque ids from external CRM/ESP syncs (sync itself lives elsewhere)
    mailchimp_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    nationbuilder_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)
