"""Campaign-related enums."""

from enum import Enum


class CampaignStatus(str, Enum):
    """Status of a campaign."""

    DRAFT = "draft"
    TESTING = "testing"  # Deliverability pre-check ran; still editable
    SENT = "sent"


SENDABLE_CAMPAIGN_STATUSES = frozenset(
    {CampaignStatus.DRAFT.value, CampaignStatus.TESTING.value}
)
