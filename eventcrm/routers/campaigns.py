"""Campaigns router - CRUD, send, deliverability test and analytics."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eventcrm.core.deps import get_db, require_admin_key
from eventcrm.schemas.campaign import (
    CampaignAnalytics,
    CampaignCreate,
    CampaignListItem,
    CampaignResponse,
    CampaignUpdate,
    CounterRecompute,
    DeliverabilityResult,
    SendQueued,
    SendSummary,
)
from eventcrm.services import campaign_service, email_event_service


router = APIRouter(tags=["campaigns"], dependencies=[Depends(require_admin_key)])


# =============================================================================
# Campaign CRUD
# =============================================================================


@router.get("", response_model=list[CampaignListItem])
def list_campaigns(
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List campaigns, newest first."""
    campaigns, _total = campaign_service.list_campaigns(
        db, status=status, limit=limit, offset=offset
    )
    return campaigns


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
def create_campaign(data: CampaignCreate, db: Session = Depends(get_db)):
    """Create a new campaign (draft status)."""
    return campaign_service.create_campaign(db, data)


@router.get("/{campaign_id}", response_model=CampaignResponse)
def get_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    campaign = campaign_service.get_campaign(db, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign


@router.patch("/{campaign_id}", response_model=CampaignResponse)
def update_campaign(campaign_id: UUID, data: CampaignUpdate, db: Session = Depends(get_db)):
    """Update a draft/testing campaign."""
    return campaign_service.update_campaign(db, campaign_id, data)


# =============================================================================
# Sending
# =============================================================================


@router.post(
    "/{campaign_id}/send",
    response_model=SendSummary,
    responses={202: {"model": SendQueued}},
)
async def send_campaign(campaign_id: UUID, db: Session = Depends(get_db)):
    """
    Send a campaign to all subscribed contacts.

    Small audiences are sent inline and the summary returned; larger ones are
    queued for the worker (202 + job id).
    """
    result = await campaign_service.send_campaign(db, campaign_id)
    if result["status"] == "queued":
        body = SendQueued(job_id=result["job_id"], total=result["total"])
        return JSONResponse(status_code=202, content=body.model_dump(mode="json"))
    return SendSummary(**result)


@router.post("/{campaign_id}/test", response_model=DeliverabilityResult)
def test_deliverability(campaign_id: UUID, db: Session = Depends(get_db)):
    """Run the deliverability pre-check (moves the campaign to testing)."""
    return campaign_service.run_deliverability_check(db, campaign_id)


@router.post("/{campaign_id}/draft", response_model=CampaignResponse)
def revert_to_draft(campaign_id: UUID, db: Session = Depends(get_db)):
    """Move a testing campaign back to draft."""
    return campaign_service.revert_to_draft(db, campaign_id)


# =============================================================================
# Analytics
# =============================================================================


@router.get("/{campaign_id}/analytics", response_model=CampaignAnalytics)
def campaign_analytics(campaign_id: UUID, db: Session = Depends(get_db)):
    return campaign_service.get_campaign_analytics(db, campaign_id)


@router.post("/{campaign_id}/recompute", response_model=CounterRecompute)
def recompute_counters(campaign_id: UUID, db: Session = Depends(get_db)):
    """Rebuild aggregate counters from the email event log."""
    drift = email_event_service.verify_campaign_counters(db, campaign_id)
    counters = email_event_service.recompute_campaign_counters(db, campaign_id)
    return CounterRecompute(campaign_id=campaign_id, counters=counters, drift_before=drift)
