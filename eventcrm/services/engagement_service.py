"""Engagement scoring.

score = attended events * 20 + email opens * 5 + recency bonus
(20 if the contact changed in the last 7 days, 10 if in the last 30).
Weights come from settings.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.core.exceptions import NotFoundError
from eventcrm.db.enums import AttendanceStatus, EmailEventType
from eventcrm.db.models import Attendance, Contact, EmailEvent
from eventcrm.db.session import begin_write
from eventcrm.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SCORE_PAGE_SIZE = 500


def recency_bonus(updated_at: datetime | None, now: datetime) -> int:
    if updated_at is None:
        return 0
    age = now - ensure_utc(updated_at)
    if age <= timedelta(days=7):
        return settings.ENGAGEMENT_RECENCY_BONUS_7D
    if age <= timedelta(days=30):
        return settings.ENGAGEMENT_RECENCY_BONUS_30D
    return 0


def compute_score(db: Session, contact: Contact, now: datetime | None = None) -> int:
    """Pure read: what the contact's score should be right now."""
    now = now or utcnow()
    attended = (
        db.query(func.count(Attendance.id))
        .filter(
            Attendance.contact_id == contact.id,
            Attendance.status == AttendanceStatus.CHECKED_IN.value,
        )
        .scalar()
        or 0
    )
    opens = (
        db.query(func.count(EmailEvent.id))
        .filter(
            EmailEvent.contact_id == contact.id,
            EmailEvent.event_type == EmailEventType.OPENED.value,
        )
        .scalar()
        or 0
    )
    return (
        attended * settings.ENGAGEMENT_WEIGHT_EVENT_ATTENDED
        + opens * settings.ENGAGEMENT_WEIGHT_EMAIL_OPEN
        + recency_bonus(contact.updated_at, now)
    )


def score(db: Session, contact_id: UUID, now: datetime | None = None) -> int:
    """
    Recompute and store one contact's score.

    The write leaves updated_at untouched; otherwise every run would reset
    the recency bonus and the score would not be a pure function of the data.
    """
    begin_write(db)
    contact = db.get(Contact, contact_id)
    if not contact:
        db.rollback()
        raise NotFoundError("Contact not found")
    value = compute_score(db, contact, now)
    db.execute(
        update(Contact)
        .where(Contact.id == contact_id)
        .values(engagement_score=value, updated_at=Contact.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return value


def score_all(db: Session, now: datetime | None = None) -> dict[str, int]:
    """Score every contact; one failure is logged and skipped, not fatal."""
    now = now or utcnow()
    processed = 0
    failed = 0
    last_id: UUID | None = None
    while True:
        query = db.query(Contact.id)
        if last_id is not None:
            query = query.filter(Contact.id > last_id)
        ids = [row[0] for row in query.order_by(Contact.id).limit(SCORE_PAGE_SIZE).all()]
        if not ids:
            break
        last_id = ids[-1]
        for contact_id in ids:
            try:
                score(db, contact_id, now)
                processed += 1
            except Exception:
                db.rollback()
                failed += 1
                logger.exception("Engagement scoring failed for contact %s", contact_id)
    logger.info("Engagement scoring finished: processed=%s failed=%s", processed, failed)
    return {"processed": processed, "failed": failed}
