"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    CAMPAIGN_SEND = "campaign_send"  # Bulk email campaign execution
    REGISTRATION_CONFIRMATION = "registration_confirmation"  # Ticket email
    ENGAGEMENT_SCORING = "engagement_scoring"  # Recompute all contact scores


class JobStatus(str, Enum):
    """Status of a background job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
