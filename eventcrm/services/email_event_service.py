"""Email event ingestion and campaign counter aggregation.

All delivery signals (send loop, provider webhooks, tracking pixel) end up in
``record_event``, which appends to ``email_events`` and bumps the campaign's
counters in the same transaction. Counters are a cache of the log and can be
rebuilt with ``recompute_campaign_counters``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.exceptions import NotFoundError
from eventcrm.db.enums import EmailEventType
from eventcrm.db.models import Campaign, Contact, EmailEvent, LinkClick
from eventcrm.db.session import begin_write
from eventcrm.services import contact_service
from eventcrm.utils.datetime_utils import utcnow
from eventcrm.utils.normalization import normalize_email

logger = logging.getLogger(__name__)


# =============================================================================
# Mapping tables
# =============================================================================

# Provider webhook type -> internal event type. Anything else is acked and ignored.
PROVIDER_EVENT_TYPES: dict[str, EmailEventType] = {
    "email.sent": EmailEventType.SENT,
    "email.delivered": EmailEventType.DELIVERED,
    "email.opened": EmailEventType.OPENED,
    "email.clicked": EmailEventType.CLICKED,
    "email.bounced": EmailEventType.BOUNCED,
    "email.complained": EmailEventType.COMPLAINED,
}

# Event type -> (column bumped on every occurrence, column bumped on first occurrence)
COUNTER_COLUMNS: dict[EmailEventType, tuple[str | None, str | None]] = {
    EmailEventType.SENT: (None, "total_sent"),
    EmailEventType.DELIVERED: (None, None),
    EmailEventType.OPENED: ("total_opens", "unique_opens"),
    EmailEventType.CLICKED: ("total_clicks", "unique_clicks"),
    EmailEventType.BOUNCED: ("total_bounces", None),
    EmailEventType.COMPLAINED: ("total_complaints", None),
}

CAMPAIGN_COUNTER_FIELDS = (
    "total_sent",
    "total_opens",
    "unique_opens",
    "total_clicks",
    "unique_clicks",
    "total_bounces",
    "total_complaints",
)


@dataclass
class IngestResult:
    status: str  # recorded | duplicate | ignored
    reason: str | None = None
    event_id: UUID | None = None
    is_unique: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.event_id:
            data["event_id"] = str(self.event_id)
            data["is_unique"] = self.is_unique
        return data


# =============================================================================
# Payload parsing
# =============================================================================


def extract_recipient_email(data: dict) -> str | None:
    """Recipient from ``to`` (string, list of strings or list of objects) or ``email``."""
    to = data.get("to")
    candidate = None
    if isinstance(to, str):
        candidate = to
    elif isinstance(to, list) and to:
        first = to[0]
        if isinstance(first, str):
            candidate = first
        elif isinstance(first, dict):
            candidate = first.get("email") or first.get("address")
    if not candidate and isinstance(data.get("email"), str):
        candidate = data["email"]
    return normalize_email(candidate) if isinstance(candidate, str) else None


def extract_tag(data: dict, name: str) -> str | None:
    """Tag value from ``tags`` as an object or a list of ``{name, value}``."""
    tags = data.get("tags")
    if isinstance(tags, dict):
        value = tags.get(name)
        return str(value) if value is not None else None
    if isinstance(tags, list):
        for tag in tags:
            if isinstance(tag, dict) and tag.get("name") == name:
                value = tag.get("value")
                return str(value) if value is not None else None
    return None


def parse_campaign_id(raw: str | None) -> UUID | None:
    if not raw:
        return None
    try:
        return UUID(raw)
    except (ValueError, TypeError):
        return None


def extract_click_link(data: dict) -> str | None:
    click = data.get("click")
    if isinstance(click, dict) and isinstance(click.get("link"), str):
        return click["link"]
    link = data.get("link")
    return link if isinstance(link, str) else None


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def build_dedup_key(payload: dict, message_id: str | None = None) -> str | None:
    """
    Stable key for one provider event.

    Built from the event type, the provider's email id, the event timestamp
    and (for clicks) the link. Falls back to the delivery message id (e.g.
    ``svix-id``), which is constant across redeliveries. None when neither is
    available, in which case the event is not deduplicated.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    email_id = data.get("email_id") or data.get("id")
    created_at = payload.get("created_at") or data.get("created_at")
    if email_id and created_at:
        parts = [
            str(payload.get("type") or ""),
            str(email_id),
            str(created_at),
            extract_click_link(data) or "",
        ]
    elif message_id:
        parts = ["delivery", message_id]
    else:
        return None
    return hashlib.sha256(json.dumps(parts).encode("utf-8")).hexdigest()


# =============================================================================
# Recording
# =============================================================================


def _insert_event(
    db: Session,
    *,
    event_type: EmailEventType,
    campaign_id: UUID | None,
    contact_id: UUID | None,
    is_unique: bool,
    event_data: dict,
    occurred_at: datetime,
    dedup_key: str | None,
) -> EmailEvent:
    with db.begin_nested():
        event = EmailEvent(
            campaign_id=campaign_id,
            contact_id=contact_id,
            event_type=event_type.value,
            is_unique=is_unique,
            event_data=event_data,
            occurred_at=occurred_at,
            dedup_key=dedup_key,
        )
        db.add(event)
        db.flush()
    return event


def _dedup_key_exists(db: Session, dedup_key: str | None) -> bool:
    if not dedup_key:
        return False
    return (
        db.query(EmailEvent.id).filter(EmailEvent.dedup_key == dedup_key).first()
        is not None
    )


def _bump_counters(
    db: Session, campaign_id: UUID, event_type: EmailEventType, is_unique: bool
) -> None:
    total_col, unique_col = COUNTER_COLUMNS[event_type]
    values = {}
    if total_col:
        values[total_col] = getattr(Campaign, total_col) + 1
    if unique_col and is_unique:
        values[unique_col] = getattr(Campaign, unique_col) + 1
    if not values:
        return
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def record_event(
    db: Session,
    *,
    event_type: EmailEventType,
    campaign_id: UUID | None,
    contact_id: UUID | None,
    event_data: dict | None = None,
    occurred_at: datetime | None = None,
    dedup_key: str | None = None,
    link_url: str | None = None,
) -> IngestResult:
    """
    Append one event and apply its counter deltas atomically.

    First occurrence is decided by the partial unique index: insert as unique,
    and on conflict insert again as a repeat. A dedup_key conflict means the
    same provider event was already recorded; nothing changes.
    """
    begin_write(db)
    if _dedup_key_exists(db, dedup_key):
        db.rollback()
        return IngestResult(status="duplicate", reason="already_recorded")

    attributed = campaign_id is not None and contact_id is not None
    common = dict(
        event_type=event_type,
        campaign_id=campaign_id,
        contact_id=contact_id,
        event_data=event_data or {},
        occurred_at=occurred_at or utcnow(),
        dedup_key=dedup_key,
    )

    try:
        event = _insert_event(db, is_unique=attributed, **common)
    except IntegrityError:
        if not attributed or _dedup_key_exists(db, dedup_key):
            db.rollback()
            return IngestResult(status="duplicate", reason="already_recorded")
        try:
            event = _insert_event(db, is_unique=False, **common)
        except IntegrityError:
            # Lost a race on the dedup key
            db.rollback()
            return IngestResult(status="duplicate", reason="already_recorded")

    if campaign_id is not None:
        _bump_counters(db, campaign_id, event_type, event.is_unique)

    if event_type == EmailEventType.CLICKED and link_url and attributed:
        db.add(LinkClick(campaign_id=campaign_id, contact_id=contact_id, link_url=link_url))

    if event_type == EmailEventType.COMPLAINED and contact_id is not None:
        contact_service.unsubscribe_contact(db, contact_id, commit=False)

    db.commit()
    return IngestResult(
        status="recorded", event_id=event.id, is_unique=event.is_unique
    )


def ingest_provider_event(
    db: Session, payload: dict, *, message_id: str | None = None
) -> IngestResult:
    """
    Ingest one provider webhook payload (``{type, data}``).

    Unmapped types and unknown recipients are acknowledged with no side
    effects. A missing or unknown campaign tag still logs the event, without
    touching any counters.
    """
    event_type = PROVIDER_EVENT_TYPES.get(payload.get("type") or "")
    if event_type is None:
        return IngestResult(status="ignored", reason="unmapped_type")

    data = payload.get("data")
    if not isinstance(data, dict):
        return IngestResult(status="ignored", reason="missing_data")

    email = extract_recipient_email(data)
    if not email:
        return IngestResult(status="ignored", reason="no_recipient")

    contact = contact_service.get_contact_by_email(db, email)
    if not contact:
        return IngestResult(status="ignored", reason="unknown_contact")

    campaign_id = parse_campaign_id(extract_tag(data, "campaign_id"))
    if campaign_id and not db.get(Campaign, campaign_id):
        logger.info("Webhook references unknown campaign %s", campaign_id)
        campaign_id = None

    occurred_at = _parse_timestamp(payload.get("created_at")) or _parse_timestamp(
        data.get("created_at")
    )

    return record_event(
        db,
        event_type=event_type,
        campaign_id=campaign_id,
        contact_id=contact.id,
        event_data=data,
        occurred_at=occurred_at,
        dedup_key=build_dedup_key(payload, message_id),
        link_url=extract_click_link(data),
    )


def record_open(
    db: Session,
    campaign_id: UUID,
    contact_id: UUID,
    *,
    user_agent: str | None = None,
) -> IngestResult:
    """Record a tracking-pixel open; same contract as an ``opened`` webhook."""
    if not db.get(Campaign, campaign_id):
        return IngestResult(status="ignored", reason="unknown_campaign")
    if not db.get(Contact, contact_id):
        return IngestResult(status="ignored", reason="unknown_contact")

    event_data: dict[str, Any] = {"source": "pixel"}
    if user_agent:
        event_data["user_agent"] = user_agent[:500]
    return record_event(
        db,
        event_type=EmailEventType.OPENED,
        campaign_id=campaign_id,
        contact_id=contact_id,
        event_data=event_data,
    )


def record_sent(
    db: Session,
    campaign_id: UUID,
    contact_id: UUID,
    *,
    provider: str,
    message_id: str | None,
) -> IngestResult:
    """Progress marker written by the send loop after the provider accepts."""
    return record_event(
        db,
        event_type=EmailEventType.SENT,
        campaign_id=campaign_id,
        contact_id=contact_id,
        event_data={"provider": provider, "message_id": message_id},
        dedup_key=hashlib.sha256(f"send:{campaign_id}:{contact_id}".encode()).hexdigest(),
    )


def get_sent_contact_ids(db: Session, campaign_id: UUID) -> set[UUID]:
    rows = (
        db.query(EmailEvent.contact_id)
        .filter(
            EmailEvent.campaign_id == campaign_id,
            EmailEvent.event_type == EmailEventType.SENT.value,
            EmailEvent.contact_id.isnot(None),
        )
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


# =============================================================================
# Reconciliation
# =============================================================================


def counters_from_log(db: Session, campaign_id: UUID) -> dict[str, int]:
    """Compute what the campaign counters should be from the event log."""
    values = {field: 0 for field in CAMPAIGN_COUNTER_FIELDS}
    rows = (
        db.query(
            EmailEvent.event_type,
            func.count(EmailEvent.id),
            func.sum(case((EmailEvent.is_unique.is_(True), 1), else_=0)),
        )
        .filter(EmailEvent.campaign_id == campaign_id)
        .group_by(EmailEvent.event_type)
        .all()
    )
    for event_type, total, unique in rows:
        try:
            total_col, unique_col = COUNTER_COLUMNS[EmailEventType(event_type)]
        except ValueError:
            logger.warning("Unknown event type in log: %s", event_type)
            continue
        if total_col:
            values[total_col] = int(total or 0)
        if unique_col:
            values[unique_col] = int(unique or 0)
    return values


def recompute_campaign_counters(db: Session, campaign_id: UUID) -> dict[str, int]:
    """Rebuild a campaign's counters from its event log under a row lock."""
    campaign = (
        db.query(Campaign).filter(Campaign.id == campaign_id).with_for_update().first()
    )
    if not campaign:
        raise NotFoundError("Campaign not found")
    values = counters_from_log(db, campaign_id)
    for field, value in values.items():
        setattr(campaign, field, value)
    db.commit()
    logger.info("Recomputed counters for campaign %s: %s", campaign_id, values)
    return values


def verify_campaign_counters(db: Session, campaign_id: UUID) -> dict[str, dict[str, int]]:
    """Return counters whose stored value drifted from the log (empty = consistent)."""
    campaign = db.get(Campaign, campaign_id)
    if not campaign:
        raise NotFoundError("Campaign not found")
    db.refresh(campaign)
    expected = counters_from_log(db, campaign_id)
    drift = {}
    for field, value in expected.items():
        stored = getattr(campaign, field)
        if stored != value:
            drift[field] = {"stored": stored, "expected": value}
    return drift
