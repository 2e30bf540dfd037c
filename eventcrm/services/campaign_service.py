"""Campaign service for bulk email management and sending."""
import asyncio
import hashlib
import html
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator
from uuid import UUID

from sqlalchemy import distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.core.exceptions import DeliveryUnknownError, InvalidStateError, NotFoundError
from eventcrm.core.structured_logging import build_log_context, mask_email
from eventcrm.db.enums import (
    CampaignStatus,
    EmailEventType,
    JobStatus,
    JobType,
    SENDABLE_CAMPAIGN_STATUSES,
)
from eventcrm.db.models import Campaign, Contact, EmailEvent, Job, LinkClick
from eventcrm.db.session import begin_write
from eventcrm.schemas.campaign import CampaignCreate, CampaignUpdate
from eventcrm.services import (
    deliverability_service,
    email_event_service,
    job_service,
    tracking_service,
)
from eventcrm.services.email_transport import (
    OutboundEmail,
    TransportChain,
    build_transport_chain,
)
from eventcrm.utils.datetime_utils import ensure_utc, utcnow
from eventcrm.utils.normalization import extract_email_domain, is_deliverable_email

logger = logging.getLogger(__name__)

MERGE_TAG_PATTERN = re.compile(r"\{\{\s*(first_name|last_name|email)\s*\}\}")

Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# Campaign CRUD
# =============================================================================

def list_campaigns(
    db: Session,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Campaign], int]:
    """List campaigns, newest first."""
    query = db.query(Campaign)
    if status:
        query = query.filter(Campaign.status == status)
    total = query.count()
    campaigns = query.order_by(Campaign.created_at.desc()).offset(offset).limit(limit).all()
    return campaigns, total


def get_campaign(db: Session, campaign_id: UUID) -> Campaign | None:
    """Get a campaign by ID."""
    return db.query(Campaign).filter(Campaign.id == campaign_id).first()


def get_campaign_or_404(db: Session, campaign_id: UUID) -> Campaign:
    campaign = get_campaign(db, campaign_id)
    if not campaign:
        raise NotFoundError("Campaign not found")
    return campaign


def create_campaign(db: Session, data: CampaignCreate) -> Campaign:
    """Create a new draft campaign."""
    campaign = Campaign(
        name=data.name,
        subject=data.subject,
        body_html=data.body_html,
        body_text=data.body_text,
        from_email=str(data.from_email) if data.from_email else None,
        from_name=data.from_name,
        status=CampaignStatus.DRAFT.value,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def update_campaign(db: Session, campaign_id: UUID, data: CampaignUpdate) -> Campaign:
    """Update a campaign (only draft/testing campaigns are editable)."""
    campaign = get_campaign_or_404(db, campaign_id)
    if campaign.status not in SENDABLE_CAMPAIGN_STATUSES:
        raise InvalidStateError(f"Cannot edit campaign in '{campaign.status}' status")

    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "from_email" and value is not None:
            value = str(value)
        setattr(campaign, field, value)
    db.commit()
    db.refresh(campaign)
    return campaign


# =============================================================================
# Rendering
# =============================================================================

def render_merge_tags(template: str, contact: Contact, *, escape: bool = False) -> str:
    """
    Substitute {{first_name}}, {{last_name}} and {{email}}.

    Missing values render as an empty string; unknown tags are left as-is.
    With escape=True values are HTML-escaped (for HTML bodies).
    """
    values = {
        "first_name": contact.first_name or "",
        "last_name": contact.last_name or "",
        "email": contact.email or "",
    }

    def replace(match: re.Match) -> str:
        value = values[match.group(1)]
        return html.escape(value) if escape else value

    return MERGE_TAG_PATTERN.sub(replace, template or "")


def build_campaign_message(campaign: Campaign, contact: Contact) -> OutboundEmail:
    """Render one recipient's copy: merge tags, open pixel, campaign tag."""
    body_html = render_merge_tags(campaign.body_html, contact, escape=True)
    body_html = tracking_service.inject_tracking_pixel(body_html, campaign.id, contact.id)
    body_text = (
        render_merge_tags(campaign.body_text, contact) if campaign.body_text else None
    )
    return OutboundEmail(
        to=contact.email,
        subject=render_merge_tags(campaign.subject, contact),
        html=body_html,
        text=body_text,
        from_email=campaign.from_email or settings.EMAIL_FROM,
        from_name=campaign.from_name or settings.EMAIL_FROM_NAME,
        tags={"campaign_id": str(campaign.id)},
        idempotency_key=f"campaign/{campaign.id}/contact/{contact.id}",
    )


# =============================================================================
# Audience
# =============================================================================

def _audience_query(db: Session):
    return db.query(Contact).filter(Contact.unsubscribed.is_(False))


def _is_eligible(contact: Contact) -> bool:
    if not is_deliverable_email(contact.email):
        return False
    excluded = settings.excluded_domains_list
    return not excluded or extract_email_domain(contact.email) not in excluded


def count_audience(db: Session) -> int:
    """Current number of subscribed contacts (before per-row email checks)."""
    return _audience_query(db).count()


def iter_audience_pages(db: Session, page_size: int | None = None) -> Iterator[list[Contact]]:
    """
    Yield subscribed contacts page by page (keyset on id).

    Each page is a fresh query, so a contact who unsubscribes mid-send is not
    picked up by later pages.
    """
    page_size = page_size or settings.CAMPAIGN_PAGE_SIZE
    last_id: UUID | None = None
    while True:
        query = _audience_query(db)
        if last_id is not None:
            query = query.filter(Contact.id > last_id)
        page = query.order_by(Contact.id).limit(page_size).all()
        if not page:
            return
        last_id = page[-1].id
        eligible = [c for c in page if _is_eligible(c)]
        if eligible:
            yield eligible


# =============================================================================
# Sending
# =============================================================================

@dataclass
class SendDispatch:
    job: Job
    audience_size: int
    inline: bool


def _send_job_key(campaign_id: UUID) -> str:
    return f"campaign_send:{campaign_id}"


def start_campaign_send(db: Session, campaign_id: UUID) -> SendDispatch:
    """
    Claim a campaign for sending and create its durable send job.

    The campaign row lock plus the job idempotency key make concurrent send
    requests collapse to one. Small audiences are marked for inline execution
    (job created as running); larger ones stay pending for the worker.
    """
    begin_write(db)
    campaign = (
        db.query(Campaign).filter(Campaign.id == campaign_id).with_for_update().first()
    )
    if not campaign:
        db.rollback()
        raise NotFoundError("Campaign not found")
    if campaign.status not in SENDABLE_CAMPAIGN_STATUSES:
        db.rollback()
        raise InvalidStateError(f"Cannot send campaign in '{campaign.status}' status")

    key = _send_job_key(campaign.id)
    job = job_service.get_job_by_idempotency_key(db, key)
    if job is not None:
        if job_service.is_lease_expired(job):
            logger.warning(
                "Campaign %s send job %s stopped heartbeating, taking over", campaign.id, job.id
            )
        elif job.status != JobStatus.FAILED.value:
            db.rollback()
            raise InvalidStateError("A send is already in progress for this campaign")
        job_service.requeue_job(db, job, commit=False)
    else:
        try:
            with db.begin_nested():
                job = job_service.schedule_job(
                    db,
                    JobType.CAMPAIGN_SEND,
                    {"campaign_id": str(campaign.id)},
                    idempotency_key=key,
                    commit=False,
                )
        except IntegrityError:
            db.rollback()
            raise InvalidStateError("A send is already in progress for this campaign")

    audience = count_audience(db)
    inline = audience <= settings.CAMPAIGN_INLINE_MAX_RECIPIENTS
    if inline:
        job_service.mark_job_running(db, job, commit=False)
    db.commit()
    db.refresh(job)
    logger.info(
        "Campaign %s send started (audience=%s, inline=%s, job=%s)",
        campaign.id,
        audience,
        inline,
        job.id,
    )
    return SendDispatch(job=job, audience_size=audience, inline=inline)


async def send_campaign(
    db: Session,
    campaign_id: UUID,
    *,
    transports: TransportChain | None = None,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """
    Entry point for the send endpoint.

    Returns the send summary when executed inline, or a queued marker with
    the job id when the worker will run it.
    """
    dispatch = start_campaign_send(db, campaign_id)
    if not dispatch.inline:
        return {
            "status": "queued",
            "job_id": dispatch.job.id,
            "total": dispatch.audience_size,
        }

    try:
        summary = await execute_campaign_send(
            db, campaign_id, transports=transports, sleep=sleep, job_id=dispatch.job.id
        )
    except Exception as exc:
        db.rollback()
        job_service.mark_job_failed(db, dispatch.job, str(exc))
        raise
    job_service.mark_job_completed(db, dispatch.job)
    return {"status": "sent", **summary}


async def _send_serial(
    db: Session,
    campaign: Campaign,
    contacts: list[Contact],
    chain: TransportChain,
    summary: dict,
    *,
    delay: float,
    sleep: Sleep,
) -> None:
    for contact in contacts:
        if summary["_requests"] and delay:
            await sleep(delay)
        summary["_requests"] += 1
        try:
            message = build_campaign_message(campaign, contact)
            receipt = await chain.send(message)
        except Exception as exc:
            summary["failed"] += 1
            summary["errors"].append({"recipient": contact.email, "reason": str(exc)})
            logger.warning(
                "Campaign %s send to %s failed: %s",
                campaign.id,
                mask_email(contact.email),
                exc,
            )
            continue
        email_event_service.record_sent(
            db,
            campaign.id,
            contact.id,
            provider=receipt.provider,
            message_id=receipt.message_id,
        )
        summary["sent"] += 1


def _batch_idempotency_key(campaign_id: UUID, contacts: list[Contact]) -> str:
    """Same campaign and same recipients give the same key across retries."""
    digest = hashlib.sha256(
        ",".join(sorted(str(c.id) for c in contacts)).encode("utf-8")
    ).hexdigest()
    return f"campaign/{campaign_id}/batch/{digest[:32]}"


async def _send_batch(
    db: Session,
    campaign: Campaign,
    contacts: list[Contact],
    chain: TransportChain,
    summary: dict,
    *,
    delay: float,
    sleep: Sleep,
) -> bool:
    """
    One batch request for the page. False means fall back to serial sends.

    A batch that may already have been accepted is never re-sent serially;
    its recipients are reported as failed with an unknown delivery status.
    """
    if summary["_requests"] and delay:
        await sleep(delay)
    summary["_requests"] += 1
    try:
        messages = [build_campaign_message(campaign, c) for c in contacts]
        receipts = await chain.send_batch(
            messages, idempotency_key=_batch_idempotency_key(campaign.id, contacts)
        )
    except DeliveryUnknownError as exc:
        logger.error(
            "Campaign %s batch of %s has unknown delivery status: %s",
            campaign.id,
            len(contacts),
            exc,
        )
        for contact in contacts:
            summary["failed"] += 1
            summary["errors"].append({"recipient": contact.email, "reason": str(exc)})
        return True
    except Exception as exc:
        logger.warning(
            "Campaign %s batch send failed, falling back to serial: %s", campaign.id, exc
        )
        return False

    for contact, receipt in zip(contacts, receipts):
        email_event_service.record_sent(
            db,
            campaign.id,
            contact.id,
            provider=receipt.provider,
            message_id=receipt.message_id,
        )
        summary["sent"] += 1
    return True


async def execute_campaign_send(
    db: Session,
    campaign_id: UUID,
    *,
    transports: TransportChain | None = None,
    delay: float | None = None,
    sleep: Sleep = asyncio.sleep,
    job_id: UUID | None = None,
) -> dict:
    """
    Send a campaign to every subscribed contact.

    Resumable: a contact with an existing ``sent`` event for this campaign is
    skipped, so re-running after a crash never double-sends. Per-recipient
    failures are collected, never raised. The campaign is marked sent at the
    end regardless of partial failures.

    With a job_id, the job lease is renewed after every audience page.

    Returns:
        {total, sent, failed, skipped, errors: [{recipient, reason}]}
    """
    campaign = get_campaign_or_404(db, campaign_id)
    if campaign.status not in SENDABLE_CAMPAIGN_STATUSES:
        raise InvalidStateError(f"Cannot send campaign in '{campaign.status}' status")

    chain = transports or build_transport_chain()
    delay = settings.CAMPAIGN_SEND_DELAY_SECONDS if delay is None else delay
    already_sent = email_event_service.get_sent_contact_ids(db, campaign.id)

    batch_transport = chain.batch_transport
    use_batch = (
        batch_transport is not None
        and count_audience(db) <= batch_transport.batch_limit
    )

    summary: dict = {"sent": 0, "failed": 0, "skipped": 0, "errors": [], "_requests": 0}
    log_extra = build_log_context(campaign_id=str(campaign.id), route="campaign_send")
    logger.info("Executing campaign %s (batch=%s)", campaign.id, use_batch, extra=log_extra)

    for page in iter_audience_pages(db):
        pending = []
        for contact in page:
            if contact.id in already_sent:
                summary["skipped"] += 1
            else:
                pending.append(contact)
        if not pending:
            continue

        if not (
            use_batch
            and await _send_batch(
                db, campaign, pending, chain, summary, delay=delay, sleep=sleep
            )
        ):
            await _send_serial(
                db, campaign, pending, chain, summary, delay=delay, sleep=sleep
            )
        if job_id is not None:
            job_service.touch_job(db, job_id)

    _finalize_campaign(db, campaign.id)

    summary.pop("_requests")
    summary["total"] = summary["sent"] + summary["failed"] + summary["skipped"]
    logger.info(
        "Campaign %s send completed: total=%s sent=%s failed=%s skipped=%s",
        campaign.id,
        summary["total"],
        summary["sent"],
        summary["failed"],
        summary["skipped"],
        extra=log_extra,
    )
    return summary


def _finalize_campaign(db: Session, campaign_id: UUID) -> None:
    """Mark sent; total_sent is the distinct recipients in the log."""
    begin_write(db)
    distinct_sent = (
        select(func.count(distinct(EmailEvent.contact_id)))
        .where(
            EmailEvent.campaign_id == campaign_id,
            EmailEvent.event_type == EmailEventType.SENT.value,
        )
        .scalar_subquery()
    )
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(
            status=CampaignStatus.SENT.value,
            sent_at=utcnow(),
            total_sent=distinct_sent,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


# =============================================================================
# Deliverability pre-check
# =============================================================================

def run_deliverability_check(db: Session, campaign_id: UUID) -> dict:
    """Run the deliverability heuristic, store it and move the campaign to testing."""
    campaign = get_campaign_or_404(db, campaign_id)
    if campaign.status not in SENDABLE_CAMPAIGN_STATUSES:
        raise InvalidStateError(f"Cannot test campaign in '{campaign.status}' status")

    result = deliverability_service.run_deliverability_test(campaign)
    result_update = (
        update(Campaign)
        .where(
            Campaign.id == campaign.id,
            Campaign.status.in_(SENDABLE_CAMPAIGN_STATUSES),
        )
        .values(
            status=CampaignStatus.TESTING.value,
            deliverability_test_results=result,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(result_update).rowcount == 0:
        db.rollback()
        raise InvalidStateError("Campaign was sent while testing")
    db.commit()
    logger.info("Deliverability test for campaign %s: score=%s", campaign.id, result["spam_score"])
    return result


def revert_to_draft(db: Session, campaign_id: UUID) -> Campaign:
    """testing -> draft. Never auto-advances the other way."""
    result = db.execute(
        update(Campaign)
        .where(
            Campaign.id == campaign_id,
            Campaign.status == CampaignStatus.TESTING.value,
        )
        .values(status=CampaignStatus.DRAFT.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    campaign = get_campaign_or_404(db, campaign_id)
    db.refresh(campaign)
    if result.rowcount == 0 and campaign.status != CampaignStatus.DRAFT.value:
        raise InvalidStateError(f"Cannot revert campaign in '{campaign.status}' status")
    return campaign


# =============================================================================
# Analytics
# =============================================================================

def _rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator * 100.0 / denominator, 2)


def get_campaign_analytics(db: Session, campaign_id: UUID, top_links: int = 10) -> dict:
    """Counters, rates, funnel, top links and an hourly open/click timeline."""
    campaign = get_campaign_or_404(db, campaign_id)
    counters = {
        field: getattr(campaign, field)
        for field in email_event_service.CAMPAIGN_COUNTER_FIELDS
    }
    delivered = (
        db.query(func.count(EmailEvent.id))
        .filter(
            EmailEvent.campaign_id == campaign.id,
            EmailEvent.event_type == EmailEventType.DELIVERED.value,
            EmailEvent.is_unique.is_(True),
        )
        .scalar()
        or 0
    )
    counters["delivered"] = delivered
    sent = campaign.total_sent

    rates = {
        "delivery_rate": _rate(delivered, sent),
        "open_rate": _rate(campaign.unique_opens, sent),
        "click_rate": _rate(campaign.unique_clicks, sent),
        "click_to_open_rate": _rate(campaign.unique_clicks, campaign.unique_opens),
        "bounce_rate": _rate(campaign.total_bounces, sent),
        "complaint_rate": _rate(campaign.total_complaints, sent),
    }

    funnel = [
        {"stage": "sent", "count": sent},
        {"stage": "delivered", "count": delivered},
        {"stage": "opened", "count": campaign.unique_opens},
        {"stage": "clicked", "count": campaign.unique_clicks},
    ]

    link_rows = (
        db.query(LinkClick.link_url, func.count(LinkClick.id).label("clicks"))
        .filter(LinkClick.campaign_id == campaign.id)
        .group_by(LinkClick.link_url)
        .order_by(func.count(LinkClick.id).desc(), LinkClick.link_url)
        .limit(top_links)
        .all()
    )

    buckets: dict = defaultdict(lambda: {"opens": 0, "clicks": 0})
    events = (
        db.query(EmailEvent.event_type, EmailEvent.occurred_at)
        .filter(
            EmailEvent.campaign_id == campaign.id,
            EmailEvent.event_type.in_(
                [EmailEventType.OPENED.value, EmailEventType.CLICKED.value]
            ),
        )
        .all()
    )
    for event_type, occurred_at in events:
        hour = ensure_utc(occurred_at).replace(minute=0, second=0, microsecond=0)
        key = "opens" if event_type == EmailEventType.OPENED.value else "clicks"
        buckets[hour][key] += 1

    return {
        "campaign_id": campaign.id,
        "status": campaign.status,
        "counters": counters,
        "rates": rates,
        "funnel": funnel,
        "top_links": [{"url": url, "clicks": clicks} for url, clicks in link_rows],
        "timeline": [
            {"hour": hour, **values} for hour, values in sorted(buckets.items())
        ],
    }
