"""Tests for campaign rendering, sending, resumability and state transitions."""

import json
from datetime import timedelta

import httpx
import pytest

from eventcrm.core.config import settings
from eventcrm.core.exceptions import InvalidStateError
from eventcrm.db.enums import CampaignStatus, EmailEventType, JobStatus, JobType
from eventcrm.db.models import Campaign, EmailEvent, Job
from eventcrm.services import campaign_service, email_event_service, http_service
from eventcrm.services.email_transport import ResendTransport, TransportChain
from eventcrm.utils.datetime_utils import utcnow


@pytest.fixture
def audience(make_contact):
    return [
        make_contact(email="ada@example.com", first_name="Ada"),
        make_contact(email="grace@example.com", first_name="Grace"),
        make_contact(email="alan@example.com", first_name="Alan"),
    ]


def _sent_events(db, campaign_id):
    return (
        db.query(EmailEvent)
        .filter(
            EmailEvent.campaign_id == campaign_id,
            EmailEvent.event_type == EmailEventType.SENT.value,
        )
        .all()
    )


# =============================================================================
# Rendering
# =============================================================================

def test_render_merge_tags(make_contact):
    contact = make_contact(first_name="Ada", last_name=None, email="ada@example.com")
    rendered = campaign_service.render_merge_tags(
        "Hi {{first_name}} {{ last_name }} <{{email}}> {{unknown}}", contact
    )
    assert rendered == "Hi Ada  <ada@example.com> {{unknown}}"


def test_message_escapes_html_and_adds_pixel(campaign, make_contact):
    contact = make_contact(first_name="<b>Ada</b>")
    message = campaign_service.build_campaign_message(campaign, contact)

    assert "&lt;b&gt;Ada&lt;/b&gt;" in message.html
    assert message.subject == "Hello <b>Ada</b>"
    assert f"campaign_id={campaign.id}" in message.html
    assert f"contact_id={contact.id}" in message.html
    assert message.html.index("/track/open") < message.html.index("</body>")
    assert message.tags == {"campaign_id": str(campaign.id)}
    assert message.idempotency_key == f"campaign/{campaign.id}/contact/{contact.id}"


# =============================================================================
# Inline send
# =============================================================================

@pytest.mark.asyncio
async def test_inline_send_to_subscribed_contacts(db, campaign, audience, make_contact, fake_chain, fake_transport):
    make_contact(email="gone@example.com", unsubscribed=True)

    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    assert result["status"] == "sent"
    assert result["sent"] == 3
    assert result["failed"] == 0
    assert result["total"] == 3
    assert sorted(m.to for m in fake_transport.sent) == [
        "ada@example.com",
        "alan@example.com",
        "grace@example.com",
    ]

    db.expire_all()
    stored = db.get(Campaign, campaign.id)
    assert stored.status == CampaignStatus.SENT.value
    assert stored.sent_at is not None
    assert stored.total_sent == 3

    job = db.query(Job).filter(Job.job_type == JobType.CAMPAIGN_SEND.value).one()
    assert job.status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_per_recipient_failures_are_collected(db, campaign, audience, transport_factory):
    transport = transport_factory(fail_for=["grace@example.com"])

    result = await campaign_service.send_campaign(
        db, campaign.id, transports=TransportChain([transport])
    )

    assert result["sent"] == 2
    assert result["failed"] == 1
    assert result["errors"][0]["recipient"] == "grace@example.com"
    assert result["errors"][0]["reason"]

    db.expire_all()
    stored = db.get(Campaign, campaign.id)
    assert stored.status == CampaignStatus.SENT.value
    assert stored.total_sent == 2


@pytest.mark.asyncio
async def test_falls_back_to_secondary_provider(db, campaign, audience, transport_factory):
    primary = transport_factory("primary", fail_for=[c.email for c in audience])
    secondary = transport_factory("secondary")

    result = await campaign_service.send_campaign(
        db, campaign.id, transports=TransportChain([primary, secondary])
    )

    assert result["sent"] == 3
    assert len(secondary.sent) == 3
    providers = {e.event_data["provider"] for e in _sent_events(db, campaign.id)}
    assert providers == {"secondary"}


@pytest.mark.asyncio
async def test_send_is_resumable(db, campaign, audience, fake_chain, fake_transport):
    email_event_service.record_sent(
        db, campaign.id, audience[0].id, provider="fake", message_id="earlier"
    )

    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=fake_chain
    )

    assert result["skipped"] == 1
    assert result["sent"] == 2
    assert result["total"] == 3
    assert audience[0].email not in [m.to for m in fake_transport.sent]
    assert len(_sent_events(db, campaign.id)) == 3


@pytest.mark.asyncio
async def test_sent_campaign_cannot_be_resent(db, campaign, audience, fake_chain):
    await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    with pytest.raises(InvalidStateError):
        await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)


@pytest.mark.asyncio
async def test_empty_audience_still_marks_sent(db, campaign, fake_chain):
    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    assert result["total"] == 0
    db.expire_all()
    assert db.get(Campaign, campaign.id).status == CampaignStatus.SENT.value


@pytest.mark.asyncio
async def test_excluded_domains_are_skipped(db, campaign, audience, make_contact, fake_chain, fake_transport, monkeypatch):
    make_contact(email="someone@blocked.test")
    monkeypatch.setattr(settings, "AUDIENCE_EXCLUDED_DOMAINS", "blocked.test")

    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    assert result["sent"] == 3
    assert "someone@blocked.test" not in [m.to for m in fake_transport.sent]


@pytest.mark.asyncio
async def test_throttle_between_requests(db, campaign, audience, fake_chain):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    await campaign_service.execute_campaign_send(
        db, campaign.id, transports=fake_chain, delay=0.5, sleep=record_sleep
    )

    assert sleeps == [0.5, 0.5]


# =============================================================================
# Batch API
# =============================================================================

@pytest.mark.asyncio
async def test_batch_send_uses_one_request(db, campaign, audience, transport_factory):
    transport = transport_factory(batch_limit=100)

    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport])
    )

    assert result["sent"] == 3
    assert len(transport.batches) == 1
    assert len(transport.batches[0]) == 3


@pytest.mark.asyncio
async def test_batch_failure_falls_back_to_serial(db, campaign, audience, transport_factory):
    transport = transport_factory(batch_limit=100, fail_batch=True)

    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport])
    )

    assert result["sent"] == 3
    assert transport.batches == []
    assert len(transport.sent) == 3


@pytest.mark.asyncio
async def test_batch_request_carries_stable_idempotency_key(db, campaign, audience, transport_factory):
    transport = transport_factory(batch_limit=100)

    await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport])
    )

    key = transport.batch_keys[0]
    assert key.startswith(f"campaign/{campaign.id}/batch/")
    assert key == campaign_service._batch_idempotency_key(campaign.id, list(reversed(audience)))


@pytest.mark.asyncio
async def test_ambiguous_batch_failure_is_not_resent(db, campaign, audience, transport_factory):
    transport = transport_factory(batch_limit=100, unknown_batch=True)
    secondary = transport_factory("secondary")

    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport, secondary])
    )

    assert transport.sent == []
    assert secondary.sent == []
    assert len(transport.batch_keys) == 1
    assert result["sent"] == 0
    assert result["failed"] == 3
    assert {e["recipient"] for e in result["errors"]} == {c.email for c in audience}
    assert _sent_events(db, campaign.id) == []


@pytest.mark.asyncio
async def test_resend_batch_timeout_is_sent_once_per_key(db, campaign, audience, monkeypatch):
    monkeypatch.setattr(http_service, "_backoff_delay", lambda *args: 0)
    keys: list[str | None] = []
    single_sends: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/emails/batch"):
            keys.append(request.headers.get("Idempotency-Key"))
            assert len(json.loads(request.content)) == 3
            raise httpx.ReadTimeout("reply lost", request=request)
        single_sends.append(request)
        return httpx.Response(200, json={"id": "re_single"})

    transport = ResendTransport("re_key", http_transport=httpx.MockTransport(handler))
    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport])
    )

    # Provider-side dedup collapses retries that share one key
    assert len(keys) == 3
    assert len(set(keys)) == 1 and keys[0] is not None
    assert single_sends == []
    assert result["sent"] == 0
    assert result["failed"] == 3


@pytest.mark.asyncio
async def test_batch_skipped_when_audience_exceeds_limit(db, campaign, audience, transport_factory):
    transport = transport_factory(batch_limit=2)

    result = await campaign_service.execute_campaign_send(
        db, campaign.id, transports=TransportChain([transport])
    )

    assert result["sent"] == 3
    assert transport.batches == []


# =============================================================================
# Queued send (worker)
# =============================================================================

@pytest.mark.asyncio
async def test_large_audience_is_queued_for_worker(db, campaign, audience, fake_chain, fake_transport, monkeypatch):
    from eventcrm import worker

    monkeypatch.setattr(settings, "CAMPAIGN_INLINE_MAX_RECIPIENTS", 2)
    monkeypatch.setattr(campaign_service, "build_transport_chain", lambda: fake_chain)

    result = await campaign_service.send_campaign(db, campaign.id)

    assert result["status"] == "queued"
    assert result["total"] == 3
    job = db.get(Job, result["job_id"])
    assert job.status == JobStatus.PENDING.value
    assert fake_transport.sent == []

    with pytest.raises(InvalidStateError):
        await campaign_service.send_campaign(db, campaign.id)

    processed = await worker.run_pending_jobs(db)
    assert processed == 1

    db.expire_all()
    assert db.get(Job, result["job_id"]).status == JobStatus.COMPLETED.value
    assert db.get(Campaign, campaign.id).status == CampaignStatus.SENT.value
    assert len(fake_transport.sent) == 3


@pytest.mark.asyncio
async def test_failed_send_job_can_be_restarted(db, campaign, audience, fake_chain, monkeypatch):
    monkeypatch.setattr(settings, "CAMPAIGN_INLINE_MAX_RECIPIENTS", 2)
    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)
    job = db.get(Job, result["job_id"])
    job.status = JobStatus.FAILED.value
    job.attempts = 3
    db.commit()

    again = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    assert again["status"] == "queued"
    assert again["job_id"] == job.id
    db.refresh(job)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0


def _abandon_inline_send(db, campaign, audience):
    """State left behind when the process died mid-way through an inline send."""
    dispatch = campaign_service.start_campaign_send(db, campaign.id)
    assert dispatch.inline
    email_event_service.record_sent(
        db, campaign.id, audience[0].id, provider="fake", message_id="before-crash"
    )
    job = db.get(Job, dispatch.job.id)
    job.heartbeat_at = utcnow() - timedelta(seconds=settings.JOB_LEASE_SECONDS + 60)
    db.commit()
    return job


@pytest.mark.asyncio
async def test_running_send_with_live_lease_rejects_second_send(db, campaign, audience, fake_chain):
    campaign_service.start_campaign_send(db, campaign.id)

    with pytest.raises(InvalidStateError):
        await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)


@pytest.mark.asyncio
async def test_abandoned_inline_send_can_be_resumed(db, campaign, audience, fake_chain, fake_transport):
    job = _abandon_inline_send(db, campaign, audience)

    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    assert result["status"] == "sent"
    assert result["skipped"] == 1
    assert result["sent"] == 2
    assert audience[0].email not in [m.to for m in fake_transport.sent]
    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    assert db.get(Campaign, campaign.id).status == CampaignStatus.SENT.value


@pytest.mark.asyncio
async def test_worker_reclaims_abandoned_send(db, campaign, audience, fake_chain, fake_transport, monkeypatch):
    from eventcrm import worker

    monkeypatch.setattr(campaign_service, "build_transport_chain", lambda: fake_chain)
    job = _abandon_inline_send(db, campaign, audience)

    assert await worker.run_pending_jobs(db) == 1

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    assert len(fake_transport.sent) == 2
    assert len(_sent_events(db, campaign.id)) == 3


@pytest.mark.asyncio
async def test_send_renews_job_lease_per_page(db, campaign, audience, fake_chain, monkeypatch):
    touched = []
    monkeypatch.setattr(settings, "CAMPAIGN_PAGE_SIZE", 1)
    monkeypatch.setattr(
        campaign_service.job_service, "touch_job", lambda _db, job_id: touched.append(job_id)
    )

    await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)

    job = db.query(Job).filter(Job.job_type == JobType.CAMPAIGN_SEND.value).one()
    assert touched == [job.id] * 3


# =============================================================================
# Editing, deliverability test, draft
# =============================================================================

def test_update_only_while_editable(db, campaign):
    from eventcrm.schemas.campaign import CampaignUpdate

    updated = campaign_service.update_campaign(db, campaign.id, CampaignUpdate(name="Renamed"))
    assert updated.name == "Renamed"

    db.query(Campaign).filter(Campaign.id == campaign.id).update(
        {"status": CampaignStatus.SENT.value}
    )
    db.commit()
    with pytest.raises(InvalidStateError):
        campaign_service.update_campaign(db, campaign.id, CampaignUpdate(name="Again"))


def test_deliverability_check_moves_to_testing_and_back(db, campaign):
    result = campaign_service.run_deliverability_check(db, campaign.id)

    assert result["status"] == "completed"
    assert 0 <= result["spam_score"] <= 10
    db.expire_all()
    stored = db.get(Campaign, campaign.id)
    assert stored.status == CampaignStatus.TESTING.value
    assert stored.deliverability_test_results["id"] == result["id"]

    reverted = campaign_service.revert_to_draft(db, campaign.id)
    assert reverted.status == CampaignStatus.DRAFT.value


def test_revert_to_draft_rejects_sent(db, campaign):
    db.query(Campaign).filter(Campaign.id == campaign.id).update(
        {"status": CampaignStatus.SENT.value}
    )
    db.commit()
    with pytest.raises(InvalidStateError):
        campaign_service.revert_to_draft(db, campaign.id)


@pytest.mark.asyncio
async def test_testing_campaign_can_be_sent(db, campaign, audience, fake_chain):
    campaign_service.run_deliverability_check(db, campaign.id)

    result = await campaign_service.send_campaign(db, campaign.id, transports=fake_chain)
    assert result["sent"] == 3


# =============================================================================
# HTTP
# =============================================================================

@pytest.mark.asyncio
async def test_campaign_http_lifecycle(client, audience):
    created = await client.post(
        "/campaigns",
        json={
            "name": "Launch",
            "subject": "See you {{first_name}}",
            "body_html": "<p>Hello {{first_name}}</p>",
        },
    )
    assert created.status_code == 201
    campaign_id = created.json()["id"]
    assert created.json()["status"] == "draft"

    listed = await client.get("/campaigns")
    assert [c["id"] for c in listed.json()] == [campaign_id]

    patched = await client.patch(f"/campaigns/{campaign_id}", json={"name": "Launch v2"})
    assert patched.json()["name"] == "Launch v2"

    tested = await client.post(f"/campaigns/{campaign_id}/test")
    assert tested.status_code == 200
    assert {p["provider"] for p in tested.json()["placement"]} == {
        "gmail",
        "outlook",
        "yahoo",
        "protonmail",
    }

    sent = await client.post(f"/campaigns/{campaign_id}/send")
    assert sent.status_code == 200
    assert sent.json()["sent"] == 3

    again = await client.post(f"/campaigns/{campaign_id}/send")
    assert again.status_code == 400
    assert again.json()["code"] == "INVALID_STATE"

    analytics = await client.get(f"/campaigns/{campaign_id}/analytics")
    assert analytics.status_code == 200
    assert analytics.json()["counters"]["total_sent"] == 3

    missing = await client.get("/campaigns/00000000-0000-0000-0000-000000000000")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_send_endpoint_returns_202_when_queued(client, campaign, audience, monkeypatch):
    monkeypatch.setattr(settings, "CAMPAIGN_INLINE_MAX_RECIPIENTS", 1)

    response = await client.post(f"/campaigns/{campaign.id}/send")

    assert response.status_code == 202
    assert response.json()["status"] == "queued"
    assert response.json()["total"] == 3
