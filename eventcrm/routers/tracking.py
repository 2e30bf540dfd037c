"""
Email Tracking Router.

Public open-tracking pixel. Must be unauthenticated since it's called from
email clients, and must always answer with the image.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from eventcrm.core.deps import get_db
from eventcrm.services import email_event_service, tracking_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["tracking"])


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _pixel_response() -> Response:
    return Response(
        content=tracking_service.TRANSPARENT_GIF,
        media_type="image/gif",
        headers=tracking_service.NO_CACHE_HEADERS,
    )


@router.get("/open")
def track_open(
    request: Request,
    campaign_id: str | None = Query(None),
    contact_id: str | None = Query(None),
    cid: str | None = Query(None, description="Alias of campaign_id"),
    uid: str | None = Query(None, description="Alias of contact_id"),
    db: Session = Depends(get_db),
) -> Response:
    """Record an email open and return a 1x1 transparent GIF."""
    parsed_campaign = _parse_uuid(campaign_id or cid)
    parsed_contact = _parse_uuid(contact_id or uid)

    if parsed_campaign and parsed_contact:
        # Best effort, never fail the image
        try:
            email_event_service.record_open(
                db,
                parsed_campaign,
                parsed_contact,
                user_agent=request.headers.get("user-agent"),
            )
        except Exception as e:
            db.rollback()
            logger.warning("Failed to record open for campaign %s: %s", parsed_campaign, e)

    return _pixel_response()
