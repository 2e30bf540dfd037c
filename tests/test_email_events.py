"""Tests for email event ingestion, deduplication and counter aggregation."""

import uuid
from collections import Counter

import pytest

from eventcrm.db.enums import EmailEventType
from eventcrm.db.models import Campaign, Contact, EmailEvent, LinkClick
from eventcrm.services import email_event_service


def _payload(event_type, contact, campaign=None, **data):
    body = {
        "email_id": data.pop("email_id", f"msg-{uuid.uuid4().hex[:12]}"),
        "to": [contact.email],
        "created_at": data.pop("created_at", "2026-10-19T10:00:00.000Z"),
    }
    if campaign is not None:
        body["tags"] = {"campaign_id": str(campaign.id)}
    body.update(data)
    return {"type": event_type, "created_at": body["created_at"], "data": body}


def _counters(db, campaign_id):
    db.rollback()
    campaign = db.get(Campaign, campaign_id)
    return {f: getattr(campaign, f) for f in email_event_service.CAMPAIGN_COUNTER_FIELDS}


# =============================================================================
# Payload parsing
# =============================================================================

@pytest.mark.parametrize(
    "data,expected",
    [
        ({"to": "Ada@Example.com"}, "ada@example.com"),
        ({"to": ["ada@example.com", "other@example.com"]}, "ada@example.com"),
        ({"to": [{"email": "ada@example.com"}]}, "ada@example.com"),
        ({"email": "ada@example.com"}, "ada@example.com"),
        ({}, None),
    ],
)
def test_extract_recipient_email(data, expected):
    assert email_event_service.extract_recipient_email(data) == expected


def test_extract_tag_accepts_object_or_list():
    assert email_event_service.extract_tag({"tags": {"campaign_id": "abc"}}, "campaign_id") == "abc"
    assert (
        email_event_service.extract_tag(
            {"tags": [{"name": "campaign_id", "value": "abc"}]}, "campaign_id"
        )
        == "abc"
    )
    assert email_event_service.extract_tag({"tags": "junk"}, "campaign_id") is None


def test_dedup_key_stable_across_redelivery():
    payload = {
        "type": "email.opened",
        "created_at": "2026-10-19T10:00:00Z",
        "data": {"email_id": "msg-1"},
    }
    assert email_event_service.build_dedup_key(payload) == email_event_service.build_dedup_key(
        dict(payload), message_id="different-delivery"
    )


def test_dedup_key_distinguishes_click_links():
    base = {"type": "email.clicked", "created_at": "2026-10-19T10:00:00Z"}
    one = {**base, "data": {"email_id": "msg-1", "click": {"link": "https://a.example"}}}
    two = {**base, "data": {"email_id": "msg-1", "click": {"link": "https://b.example"}}}
    assert email_event_service.build_dedup_key(one) != email_event_service.build_dedup_key(two)


def test_dedup_key_falls_back_to_message_id():
    payload = {"type": "email.opened", "data": {}}
    assert email_event_service.build_dedup_key(payload) is None
    assert email_event_service.build_dedup_key(payload, message_id="msg_abc") is not None


# =============================================================================
# Ingestion
# =============================================================================

def test_open_counts_total_and_unique(db, campaign, make_contact):
    ada = make_contact()

    first = email_event_service.ingest_provider_event(db, _payload("email.opened", ada, campaign))
    second = email_event_service.ingest_provider_event(
        db, _payload("email.opened", ada, campaign, created_at="2026-10-19T11:00:00Z")
    )

    assert first.status == "recorded" and first.is_unique is True
    assert second.status == "recorded" and second.is_unique is False
    counters = _counters(db, campaign.id)
    assert counters["total_opens"] == 2
    assert counters["unique_opens"] == 1


def test_redelivered_webhook_is_duplicate(db, campaign, make_contact):
    ada = make_contact()
    payload = _payload("email.opened", ada, campaign, email_id="msg-fixed")

    email_event_service.ingest_provider_event(db, payload)
    result = email_event_service.ingest_provider_event(db, payload)

    assert result.status == "duplicate"
    assert _counters(db, campaign.id)["total_opens"] == 1
    assert db.query(EmailEvent).count() == 1


def test_click_records_link(db, campaign, make_contact):
    ada = make_contact()
    for link in ("https://a.example", "https://a.example", "https://b.example"):
        email_event_service.ingest_provider_event(
            db,
            _payload("email.clicked", ada, campaign, click={"link": link}),
        )

    counters = _counters(db, campaign.id)
    assert counters["total_clicks"] == 3
    assert counters["unique_clicks"] == 1
    assert db.query(LinkClick).filter(LinkClick.link_url == "https://a.example").count() == 2


def test_bounce_and_complaint(db, campaign, make_contact):
    ada = make_contact()
    email_event_service.ingest_provider_event(db, _payload("email.bounced", ada, campaign))
    email_event_service.ingest_provider_event(db, _payload("email.complained", ada, campaign))

    counters = _counters(db, campaign.id)
    assert counters["total_bounces"] == 1
    assert counters["total_complaints"] == 1
    assert db.get(Contact, ada.id).unsubscribed is True


def test_delivered_does_not_touch_counters(db, campaign, make_contact):
    ada = make_contact()
    result = email_event_service.ingest_provider_event(db, _payload("email.delivered", ada, campaign))

    assert result.status == "recorded"
    assert all(value == 0 for value in _counters(db, campaign.id).values())


def test_sent_webhook_after_send_loop_counts_once(db, campaign, make_contact):
    ada = make_contact()
    email_event_service.record_sent(db, campaign.id, ada.id, provider="resend", message_id="m1")
    email_event_service.ingest_provider_event(db, _payload("email.sent", ada, campaign))

    assert _counters(db, campaign.id)["total_sent"] == 1


@pytest.mark.parametrize(
    "payload_type,reason",
    [("email.delivery_delayed", "unmapped_type"), ("contact.created", "unmapped_type")],
)
def test_unmapped_types_are_ignored(db, campaign, make_contact, payload_type, reason):
    ada = make_contact()
    result = email_event_service.ingest_provider_event(db, _payload(payload_type, ada, campaign))

    assert result.status == "ignored"
    assert result.reason == reason
    assert db.query(EmailEvent).count() == 0


def test_unknown_recipient_is_ignored(db, campaign):
    stranger = Contact(email="nobody@example.com")
    result = email_event_service.ingest_provider_event(db, _payload("email.opened", stranger, campaign))

    assert result.status == "ignored"
    assert result.reason == "unknown_contact"


def test_missing_campaign_tag_logs_without_counters(db, campaign, make_contact):
    ada = make_contact()
    result = email_event_service.ingest_provider_event(db, _payload("email.opened", ada))

    assert result.status == "recorded"
    event = db.query(EmailEvent).one()
    assert event.campaign_id is None
    assert event.is_unique is False
    assert _counters(db, campaign.id)["total_opens"] == 0


def test_unknown_campaign_tag_is_dropped(db, make_contact):
    ada = make_contact()
    payload = _payload("email.opened", ada)
    payload["data"]["tags"] = {"campaign_id": str(uuid.uuid4())}

    result = email_event_service.ingest_provider_event(db, payload)

    assert result.status == "recorded"
    assert db.query(EmailEvent).one().campaign_id is None


# =============================================================================
# Pixel opens
# =============================================================================

def test_record_open_from_pixel(db, campaign, make_contact):
    ada = make_contact()
    email_event_service.record_open(db, campaign.id, ada.id, user_agent="Mail/1.0")
    email_event_service.record_open(db, campaign.id, ada.id)

    counters = _counters(db, campaign.id)
    assert counters["total_opens"] == 2
    assert counters["unique_opens"] == 1


def test_record_open_unknown_ids(db, campaign, make_contact):
    ada = make_contact()
    assert email_event_service.record_open(db, uuid.uuid4(), ada.id).status == "ignored"
    assert email_event_service.record_open(db, campaign.id, uuid.uuid4()).status == "ignored"


# =============================================================================
# Reconciliation
# =============================================================================

def test_recompute_repairs_drift(db, campaign, make_contact):
    ada = make_contact()
    grace = make_contact()
    email_event_service.record_open(db, campaign.id, ada.id)
    email_event_service.record_open(db, campaign.id, ada.id)
    email_event_service.record_open(db, campaign.id, grace.id)

    db.query(Campaign).filter(Campaign.id == campaign.id).update(
        {"total_opens": 40, "unique_opens": 0}
    )
    db.commit()

    drift = email_event_service.verify_campaign_counters(db, campaign.id)
    assert drift["total_opens"] == {"stored": 40, "expected": 3}
    assert drift["unique_opens"] == {"stored": 0, "expected": 2}

    counters = email_event_service.recompute_campaign_counters(db, campaign.id)
    assert counters["total_opens"] == 3
    assert counters["unique_opens"] == 2
    assert email_event_service.verify_campaign_counters(db, campaign.id) == {}


def test_counters_match_log_after_mixed_traffic(db, campaign, make_contact):
    contacts = [make_contact() for _ in range(3)]
    for contact in contacts:
        email_event_service.record_sent(db, campaign.id, contact.id, provider="fake", message_id=None)
        email_event_service.record_open(db, campaign.id, contact.id)
    email_event_service.ingest_provider_event(
        db, _payload("email.clicked", contacts[0], campaign, click={"link": "https://a.example"})
    )
    email_event_service.ingest_provider_event(db, _payload("email.bounced", contacts[1], campaign))

    assert email_event_service.verify_campaign_counters(db, campaign.id) == {}
    assert _counters(db, campaign.id)["total_sent"] == 3


@pytest.mark.asyncio
async def test_recompute_endpoint(client, db, campaign, make_contact):
    ada = make_contact()
    email_event_service.record_open(db, campaign.id, ada.id)
    db.query(Campaign).filter(Campaign.id == campaign.id).update({"total_opens": 9})
    db.commit()

    response = await client.post(f"/campaigns/{campaign.id}/recompute")

    assert response.status_code == 200
    data = response.json()
    assert data["counters"]["total_opens"] == 1
    assert data["drift_before"]["total_opens"] == {"stored": 9, "expected": 1}


# =============================================================================
# Concurrent delivery
# =============================================================================

def test_concurrent_redelivery_records_once(db, campaign, make_contact, run_concurrently):
    ada = make_contact()
    payload = _payload("email.opened", ada, campaign, email_id="msg-redelivered")

    outcomes = run_concurrently(
        6, lambda session, _: email_event_service.ingest_provider_event(session, payload).status
    )

    assert Counter(outcomes) == {"recorded": 1, "duplicate": 5}, outcomes
    counters = _counters(db, campaign.id)
    assert counters["total_opens"] == 1
    assert counters["unique_opens"] == 1
    assert db.query(EmailEvent).filter(EmailEvent.campaign_id == campaign.id).count() == 1


def test_concurrent_first_opens_count_one_unique(db, campaign, make_contact, run_concurrently):
    ada = make_contact()
    campaign_id, contact_id = campaign.id, ada.id

    outcomes = run_concurrently(
        6, lambda session, _: email_event_service.record_open(session, campaign_id, contact_id).is_unique
    )

    assert sorted(outcomes) == [False] * 5 + [True], outcomes
    counters = _counters(db, campaign_id)
    assert counters["total_opens"] == 6
    assert counters["unique_opens"] == 1
    assert email_event_service.verify_campaign_counters(db, campaign_id) == {}
