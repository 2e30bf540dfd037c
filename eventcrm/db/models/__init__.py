"""SQLAlchemy ORM models."""

from eventcrm.db.models.contacts import Contact
from eventcrm.db.models.events import Attendance, Event
from eventcrm.db.models.campaigns import Campaign, EmailEvent, LinkClick
from eventcrm.db.models.jobs import Job
from eventcrm.db.models.sync import SyncLog

__all__ = [
    "Attendance",
    "Campaign",
    "Contact",
    "EmailEvent",
    "Event",
    "Job",
    "LinkClick",
    "SyncLog",
]
