"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from eventcrm.db.enums import JobType
from eventcrm.jobs.handlers import campaigns, email, engagement

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.CAMPAIGN_SEND.value: campaigns.process_campaign_send,
    JobType.REGISTRATION_CONFIRMATION.value: email.process_registration_confirmation,
    JobType.ENGAGEMENT_SCORING.value: engagement.process_engagement_scoring,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
