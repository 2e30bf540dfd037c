"""Public registration router - event page details and sign-up."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.core.deps import get_db, require_admin_key
from eventcrm.core.rate_limit import limiter
from eventcrm.schemas.registration import (
    EventCreate,
    EventPublic,
    RegistrationRequest,
    RegistrationResponse,
)
from eventcrm.services import registration_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["registration"])


@router.get("/events/{slug}", response_model=EventPublic)
def get_event(slug: str, db: Session = Depends(get_db)):
    """Event details for the public registration page."""
    event = registration_service.get_event_by_slug(db, slug)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.post("/register", response_model=RegistrationResponse)
@limiter.limit(f"{settings.RATE_LIMIT_REGISTER}/minute")
def register(
    request: Request,
    data: RegistrationRequest,
    db: Session = Depends(get_db),
):
    """
    Register for an event.

    Errors (as {error, code}):
    - 404 NOT_FOUND: unknown event
    - 400 INVALID_STATE: registration closed
    - 409 ALREADY_REGISTERED / EVENT_FULL
    """
    result = registration_service.register(
        db,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        agree_updates=data.agree_updates,
        event_id=data.event_id,
        event_slug=data.event_slug,
    )
    return RegistrationResponse(
        contact_id=result.contact.id,
        attendance_id=result.attendance.id,
    )


@router.post(
    "/events",
    response_model=EventPublic,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_key)],
)
def create_event(data: EventCreate, db: Session = Depends(get_db)):
    """Create an event (admin)."""
    return registration_service.create_event(db, data)
