"""Event and attendance (ticket) models."""

from __future__ import annotations

from typing import TYPE_CHECKING

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
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eventcrm.db.base import Base, JSONType
from eventcrm.db.enums import AttendanceStatus
from eventcrm.utils.datetime_utils import utcnow

if TYPE_CHECKING:
    from eventcrm.db.models import Contact


class Event(Base):
    """A scheduled event people register for and check in to."""

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_date: Mapped[datetime] = mapped_column(nullable=False)
    location: Mapped[str | None] = mapped_column(String(300), nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    registration_open: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


_ACTIVE_ATTENDANCE = f"status <> '{AttendanceStatus.CANCELLED.value}'"


class Attendance(Base):
    """
    A ticket: one contact registered for one event.

    At most one non-cancelled row may exist per (contact, event); the partial
    unique index enforces it even under concurrent registration.
    ``qr_code_data`` is the opaque token encoded in the QR ticket.
    """

    __tablename__ = "attendance"
    __table_args__ = (
        Index(
            "uq_attendance_active_contact_event",
            "contact_id",
            "event_id",
            unique=True,
            postgresql_where=text(_ACTIVE_ATTENDANCE),
            sqlite_where=text(_ACTIVE_ATTENDANCE),
        ),
        Index("idx_attendance_event_status", "event_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="RESTRICT"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=AttendanceStatus.REGISTERED.value, nullable=False
    )
    qr_code_data: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    registered_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    checked_in_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Free-text label of the scanner/device, not an account reference
    checked_in_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )

    contact: Mapped["Contact"] = relationship()
    event: Mapped[Event] = relationship()
