"""Check-in router - door scanner endpoints (staff only)."""

from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eventcrm.core.deps import get_db, require_admin_key
from eventcrm.core.exceptions import AlreadyCheckedInError
from eventcrm.schemas.checkin import (
    AttendanceResponse,
    AttendanceStats,
    CheckinResponse,
    ContactSummary,
    SearchRequest,
    SearchResponse,
    ValidateRequest,
)
from eventcrm.services import checkin_service, registration_service


router = APIRouter(tags=["checkin"], dependencies=[Depends(require_admin_key)])


@router.post("/checkin/validate", response_model=CheckinResponse)
def validate_ticket(data: ValidateRequest, db: Session = Depends(get_db)):
    """
    Scan a QR ticket.

    A repeat scan returns 409 with the original check-in time so the scanner
    can show "already checked in at ...".
    """
    try:
        attendance = checkin_service.validate(
            db,
            token=data.token,
            event_id=data.event_id,
            checked_in_by=data.checked_in_by,
        )
    except AlreadyCheckedInError as e:
        existing = e.attendance
        body = CheckinResponse(
            status="already_checked_in",
            attendance_id=existing.id,
            checked_in_at=existing.checked_in_at,
            contact=ContactSummary.model_validate(existing.contact),
        )
        return JSONResponse(
            status_code=409,
            content={**body.model_dump(mode="json"), "code": e.code},
        )

    return CheckinResponse(
        status="checked_in",
        attendance_id=attendance.id,
        checked_in_at=attendance.checked_in_at,
        contact=ContactSummary.model_validate(attendance.contact),
    )


@router.post("/checkin/search", response_model=SearchResponse)
def search_attendees(data: SearchRequest, db: Session = Depends(get_db)):
    """Manual lookup by name or email (max 20 results)."""
    results = checkin_service.search(db, event_id=data.event_id, query=data.query)
    return SearchResponse(results=[AttendanceResponse.model_validate(a) for a in results])


@router.post("/checkin/{attendance_id}/undo", response_model=AttendanceResponse)
def undo_checkin(attendance_id: UUID, db: Session = Depends(get_db)):
    """Revert a mistaken check-in."""
    return checkin_service.undo(db, attendance_id)


@router.post("/attendance/{attendance_id}/cancel", response_model=AttendanceResponse)
def cancel_attendance(attendance_id: UUID, db: Session = Depends(get_db)):
    """Cancel an unscanned ticket."""
    return registration_service.cancel_registration(db, attendance_id)


@router.get("/events/{event_id}/attendance-stats", response_model=AttendanceStats)
def attendance_stats(event_id: UUID, db: Session = Depends(get_db)):
    """Ticket counts per status for the door dashboard."""
    stats = checkin_service.get_event_attendance_stats(db, event_id)
    return AttendanceStats(event_id=event_id, **stats)
