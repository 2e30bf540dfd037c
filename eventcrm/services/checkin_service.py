"""Check-in service - QR ticket validation at the door.

Every transition is a single conditional UPDATE guarded by the current
status, so two scanners reading the same ticket at the same moment produce
exactly one check-in; the loser sees ``AlreadyCheckedInError`` carrying the
winner's timestamp.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session, contains_eager

from eventcrm.core.config import settings
from eventcrm.core.exceptions import (
    AlreadyCheckedInError,
    InvalidStateError,
    NotFoundError,
    TicketCancelledError,
    ValidationError,
)
from eventcrm.db.enums import AttendanceStatus
from eventcrm.db.models import Attendance, Contact
from eventcrm.db.session import begin_write
from eventcrm.utils.datetime_utils import utcnow
from eventcrm.utils.normalization import escape_like, normalize_search_text

logger = logging.getLogger(__name__)

# A concurrent undo can put the row back to registered between our UPDATE
# and the re-read; one retry settles it.
VALIDATE_ATTEMPTS = 2


def _get_ticket(db: Session, token: str, event_id: UUID) -> Attendance | None:
    # Scoped to the event so a ticket for another event is simply not found
    return (
        db.query(Attendance)
        .filter(Attendance.qr_code_data == token, Attendance.event_id == event_id)
        .first()
    )


def validate(
    db: Session,
    *,
    token: str,
    event_id: UUID,
    checked_in_by: str | None = None,
) -> Attendance:
    """
    Check a ticket in.

    Raises:
        NotFoundError: No ticket with this token for this event
        AlreadyCheckedInError: Ticket was already scanned (carries the original scan)
        TicketCancelledError: Ticket was cancelled
    """
    token = (token or "").strip()
    if not token:
        raise ValidationError("Ticket token is required")

    begin_write(db)
    attendance = _get_ticket(db, token, event_id)
    if not attendance:
        db.rollback()
        raise NotFoundError("Ticket not found for this event")

    for _ in range(VALIDATE_ATTEMPTS):
        result = db.execute(
            update(Attendance)
            .where(
                Attendance.id == attendance.id,
                Attendance.status == AttendanceStatus.REGISTERED.value,
            )
            .values(
                status=AttendanceStatus.CHECKED_IN.value,
                checked_in_at=utcnow(),
                checked_in_by=checked_in_by,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(attendance)

        if result.rowcount == 1:
            logger.info("Checked in attendance %s for event %s", attendance.id, event_id)
            return attendance

        if attendance.status == AttendanceStatus.CHECKED_IN.value:
            raise AlreadyCheckedInError(attendance)
        if attendance.status == AttendanceStatus.CANCELLED.value:
            raise TicketCancelledError("Ticket has been cancelled")
        begin_write(db)

    db.rollback()
    raise InvalidStateError("Ticket state changed during check-in, scan again")


def search(db: Session, *, event_id: UUID, query: str, limit: int | None = None) -> list[Attendance]:
    """
    Manual lookup at the door: case-insensitive substring match on first
    name, last name, full name or email, scoped to one event.
    """
    text = normalize_search_text(query)
    if not text:
        raise ValidationError("Search query is required")
    limit = limit or settings.CHECKIN_SEARCH_LIMIT

    pattern = f"%{escape_like(text)}%"
    full_name = func.coalesce(Contact.first_name, "") + " " + func.coalesce(Contact.last_name, "")
    return (
        db.query(Attendance)
        .join(Attendance.contact)
        .options(contains_eager(Attendance.contact))
        .filter(
            Attendance.event_id == event_id,
            or_(
                Contact.first_name.ilike(pattern, escape="\\"),
                Contact.last_name.ilike(pattern, escape="\\"),
                Contact.email.ilike(pattern, escape="\\"),
                full_name.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(Contact.last_name, Contact.first_name, Attendance.id)
        .limit(limit)
        .all()
    )


def undo(db: Session, attendance_id: UUID) -> Attendance:
    """
    Revert a mistaken check-in (checked_in -> registered).

    Clears checked_in_at so the ticket can be scanned again.
    """
    result = db.execute(
        update(Attendance)
        .where(
            Attendance.id == attendance_id,
            Attendance.status == AttendanceStatus.CHECKED_IN.value,
        )
        .values(
            status=AttendanceStatus.REGISTERED.value,
            checked_in_at=None,
            checked_in_by=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    attendance = db.get(Attendance, attendance_id)
    if not attendance:
        raise NotFoundError("Attendance not found")
    db.refresh(attendance)
    if result.rowcount == 0:
        raise InvalidStateError(
            f"Only checked-in tickets can be undone (status is {attendance.status})"
        )
    logger.info("Undid check-in for attendance %s", attendance_id)
    return attendance


def get_event_attendance_stats(db: Session, event_id: UUID) -> dict[str, int]:
    """Ticket counts per status for one event."""
    stats = {status.value: 0 for status in AttendanceStatus}
    rows = (
        db.query(Attendance.status, func.count(Attendance.id))
        .filter(Attendance.event_id == event_id)
        .group_by(Attendance.status)
        .all()
    )
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(stats[s.value] for s in AttendanceStatus)
    return stats
