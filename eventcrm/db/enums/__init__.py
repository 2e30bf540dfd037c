"""Enum definitions for application constants."""

from eventcrm.db.enums.attendance import AttendanceStatus
from eventcrm.db.enums.campaigns import CampaignStatus, SENDABLE_CAMPAIGN_STATUSES
from eventcrm.db.enums.email import EmailEventType, EmailProvider
from eventcrm.db.enums.jobs import JobStatus, JobType

__all__ = [
    "AttendanceStatus",
    "CampaignStatus",
    "EmailEventType",
    "EmailProvider",
    "JobStatus",
    "JobType",
    "SENDABLE_CAMPAIGN_STATUSES",
]
