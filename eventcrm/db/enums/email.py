"""Email event enums."""

from enum import Enum


class EmailEventType(str, Enum):
    """Kinds of delivery signals recorded in the email event log."""

    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class EmailProvider(str, Enum):
    RESEND = "resend"
    MAILGUN = "mailgun"
    DRY_RUN = "dry_run"
