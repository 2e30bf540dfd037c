"""Campaign job handlers."""

from __future__ import annotations

import logging
from uuid import UUID

from eventcrm.db.enums import SENDABLE_CAMPAIGN_STATUSES

logger = logging.getLogger(__name__)


async def process_campaign_send(db, job) -> None:
    """
    Process a CAMPAIGN_SEND job - execute bulk email campaign.

    Payload:
        - campaign_id: UUID of the campaign

    Safe to retry: recipients already holding a ``sent`` event are skipped.
    """
    from eventcrm.db.models import Campaign
    from eventcrm.services import campaign_service

    payload = job.payload or {}
    campaign_id = payload.get("campaign_id")
    if not campaign_id:
        raise Exception("Missing campaign_id in campaign send job")

    campaign = db.query(Campaign).filter(Campaign.id == UUID(campaign_id)).first()
    if not campaign:
        raise Exception(f"Campaign {campaign_id} not found")

    if campaign.status not in SENDABLE_CAMPAIGN_STATUSES:
        logger.info("Campaign %s already %s, skipping execution", campaign_id, campaign.status)
        return

    logger.info("Starting campaign send: campaign=%s job=%s", campaign_id, job.id)
    try:
        result = await campaign_service.execute_campaign_send(
            db, UUID(campaign_id), job_id=job.id
        )
    except Exception as e:
        logger.error(
            "Campaign send failed: campaign=%s error=%s",
            campaign_id,
            type(e).__name__,
        )
        raise

    logger.info(
        "Campaign send completed: campaign=%s, sent=%s, failed=%s, skipped=%s",
        campaign_id,
        result["sent"],
        result["failed"],
        result["skipped"],
    )
