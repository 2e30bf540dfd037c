"""Engagement scoring job handler."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


async def process_engagement_scoring(db, job) -> None:
    """Recompute every contact's engagement score."""
    from eventcrm.services import engagement_service

    result = engagement_service.score_all(db)
    if result["failed"]:
        logger.warning(
            "Engagement scoring job %s: %s contacts failed", job.id, result["failed"]
        )
