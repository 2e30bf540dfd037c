"""Registration service - turn a public sign-up into a contact + ticket."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.exceptions import (
    AlreadyRegisteredError,
    ConflictError,
    CRMError,
    EventFullError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from eventcrm.db.enums import AttendanceStatus, JobType
from eventcrm.db.models import Attendance, Contact, Event
from eventcrm.db.session import begin_write
from eventcrm.schemas.registration import EventCreate
from eventcrm.services import contact_service, job_service, ticket_service

logger = logging.getLogger(__name__)

TOKEN_INSERT_ATTEMPTS = 3


@dataclass
class RegistrationResult:
    contact: Contact
    attendance: Attendance


def get_event_by_slug(db: Session, slug: str) -> Event | None:
    return db.query(Event).filter(Event.slug == slug).first()


def create_event(db: Session, data: EventCreate) -> Event:
    """Create an event. Slugs are unique."""
    begin_write(db)
    if get_event_by_slug(db, data.slug):
        db.rollback()
        raise ConflictError(f"Event slug '{data.slug}' already exists")
    event = Event(**data.model_dump())
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Event slug '{data.slug}' already exists")
    db.refresh(event)
    logger.info("Created event %s (%s)", event.id, event.slug)
    return event


def _lock_event(db: Session, event_id: UUID | None, event_slug: str | None) -> Event:
    query = db.query(Event)
    if event_id:
        query = query.filter(Event.id == event_id)
    elif event_slug:
        query = query.filter(Event.slug == event_slug)
    else:
        raise ValidationError("event_id or event_slug is required")
    # Serializes registrations per event so the capacity check holds
    event = query.with_for_update().first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def get_active_attendance(db: Session, contact_id: UUID, event_id: UUID) -> Attendance | None:
    return (
        db.query(Attendance)
        .filter(
            Attendance.contact_id == contact_id,
            Attendance.event_id == event_id,
            Attendance.status != AttendanceStatus.CANCELLED.value,
        )
        .first()
    )


def count_active_attendance(db: Session, event_id: UUID) -> int:
    return (
        db.query(func.count(Attendance.id))
        .filter(
            Attendance.event_id == event_id,
            Attendance.status != AttendanceStatus.CANCELLED.value,
        )
        .scalar()
        or 0
    )


def _insert_attendance(db: Session, contact: Contact, event: Event) -> Attendance:
    for attempt in range(TOKEN_INSERT_ATTEMPTS):
        token = ticket_service.generate_ticket_token(db)
        try:
            with db.begin_nested():
                attendance = Attendance(
                    contact_id=contact.id,
                    event_id=event.id,
                    status=AttendanceStatus.REGISTERED.value,
                    qr_code_data=token,
                )
                db.add(attendance)
                db.flush()
            return attendance
        except IntegrityError:
            # Either a concurrent registration won, or the token collided
            if get_active_attendance(db, contact.id, event.id):
                raise AlreadyRegisteredError("Already registered for this event")
            logger.warning(
                "Ticket token collision for event %s (attempt %s)", event.id, attempt + 1
            )
    raise RuntimeError("Could not allocate a ticket token")


def register(
    db: Session,
    *,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    phone: str | None = None,
    agree_updates: bool = False,
    event_id: UUID | None = None,
    event_slug: str | None = None,
) -> RegistrationResult:
    """
    Register a person for an event.

    Creates or merges the contact, issues a ticket and enqueues the
    confirmation email in one transaction. The email itself is sent by the
    worker, so a provider outage never fails a registration.

    Raises:
        NotFoundError: Unknown event
        InvalidStateError: Registration closed
        EventFullError: Capacity reached
        AlreadyRegisteredError: Contact already holds an active ticket
    """
    try:
        begin_write(db)
        event = _lock_event(db, event_id, event_slug)
        if not event.registration_open:
            raise InvalidStateError("Registration is closed for this event")

        contact = contact_service.upsert_contact_for_registration(
            db,
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            agree_updates=agree_updates,
        )

        if get_active_attendance(db, contact.id, event.id):
            raise AlreadyRegisteredError("Already registered for this event")

        if event.capacity is not None and count_active_attendance(db, event.id) >= event.capacity:
            raise EventFullError("This event is full")

        attendance = _insert_attendance(db, contact, event)

        job_service.schedule_job(
            db,
            JobType.REGISTRATION_CONFIRMATION,
            {"attendance_id": str(attendance.id)},
            idempotency_key=f"registration_confirmation:{attendance.id}",
            commit=False,
        )
        db.commit()
    except CRMError:
        db.rollback()
        raise

    db.refresh(attendance)
    logger.info(
        "Registered contact %s for event %s (attendance %s)",
        contact.id,
        event.id,
        attendance.id,
    )
    return RegistrationResult(contact=contact, attendance=attendance)


def cancel_registration(db: Session, attendance_id: UUID) -> Attendance:
    """
    Cancel a ticket that has not been scanned yet.

    Terminal; frees the (contact, event) slot for a fresh registration.
    """
    result = db.execute(
        update(Attendance)
        .where(
            Attendance.id == attendance_id,
            Attendance.status == AttendanceStatus.REGISTERED.value,
        )
        .values(status=AttendanceStatus.CANCELLED.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    attendance = db.get(Attendance, attendance_id)
    if not attendance:
        raise NotFoundError("Attendance not found")
    db.refresh(attendance)
    if result.rowcount == 0 and attendance.status != AttendanceStatus.CANCELLED.value:
        raise InvalidStateError(
            f"Cannot cancel a ticket in status {attendance.status}"
        )
    return attendance
