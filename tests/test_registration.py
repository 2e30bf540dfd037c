"""Tests for public registration: contact upsert, tickets, capacity, duplicates."""

import uuid
from collections import Counter

import pytest
from sqlalchemy.exc import IntegrityError

from eventcrm.core.exceptions import (
    AlreadyRegisteredError,
    EventFullError,
    InvalidStateError,
    NotFoundError,
)
from eventcrm.db.enums import AttendanceStatus, JobStatus, JobType
from eventcrm.db.models import Attendance, Contact, Job
from eventcrm.services import registration_service


def _register(db, event, email="ada@example.com", **kwargs):
    values = {
        "email": email,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "agree_updates": True,
        "event_id": event.id,
    }
    values.update(kwargs)
    return registration_service.register(db, **values)


def test_register_creates_contact_ticket_and_confirmation_job(db, event):
    result = _register(db, event, phone="+1 (555) 010-2030")

    assert result.contact.email == "ada@example.com"
    assert result.contact.phone == "+15550102030"
    assert result.contact.unsubscribed is False
    assert result.attendance.status == AttendanceStatus.REGISTERED.value
    assert result.attendance.event_id == event.id
    assert len(result.attendance.qr_code_data) >= 43

    job = db.query(Job).filter(Job.job_type == JobType.REGISTRATION_CONFIRMATION.value).one()
    assert job.status == JobStatus.PENDING.value
    assert job.payload == {"attendance_id": str(result.attendance.id)}
    assert job.idempotency_key == f"registration_confirmation:{result.attendance.id}"


def test_register_by_slug(db, event):
    result = _register(db, event, event_id=None, event_slug=event.slug)
    assert result.attendance.event_id == event.id


def test_register_normalizes_email_case(db, event, make_event):
    first = _register(db, event, email="Ada@Example.COM")
    other = make_event()
    second = _register(db, other, email="ada@example.com")

    assert first.contact.id == second.contact.id
    assert db.query(Contact).count() == 1


def test_register_merges_without_blanking_existing_fields(db, event, make_event, make_contact):
    contact = make_contact(
        email="grace@example.com", first_name="Grace", last_name="Hopper", phone="5551234"
    )

    result = _register(
        db, event, email="grace@example.com", first_name="Grace", last_name="", phone=None
    )

    assert result.contact.id == contact.id
    assert result.contact.last_name == "Hopper"
    assert result.contact.phone == "5551234"


def test_register_never_unsubscribes_existing_contact(db, event, make_contact):
    contact = make_contact(email="opted@example.com", unsubscribed=False)

    _register(db, event, email="opted@example.com", agree_updates=False)

    db.refresh(contact)
    assert contact.unsubscribed is False


def test_register_opts_back_in_when_agreeing(db, event, make_contact):
    contact = make_contact(email="back@example.com", unsubscribed=True)

    _register(db, event, email="back@example.com", agree_updates=True)

    db.refresh(contact)
    assert contact.unsubscribed is False


def test_new_contact_without_consent_is_unsubscribed(db, event):
    result = _register(db, event, email="quiet@example.com", agree_updates=False)
    assert result.contact.unsubscribed is True


def test_duplicate_registration_rejected(db, event):
    _register(db, event)

    with pytest.raises(AlreadyRegisteredError) as exc_info:
        _register(db, event, email="ADA@example.com")

    assert exc_info.value.code == "ALREADY_REGISTERED"
    assert db.query(Attendance).count() == 1


def test_register_unknown_event(db):
    with pytest.raises(NotFoundError):
        registration_service.register(db, email="x@example.com", event_id=uuid.uuid4())


def test_register_closed_event(db, make_event):
    closed = make_event(registration_open=False)
    with pytest.raises(InvalidStateError):
        _register(db, closed)


def test_register_full_event(db, make_event):
    small = make_event(capacity=1)
    _register(db, small, email="first@example.com")

    with pytest.raises(EventFullError) as exc_info:
        _register(db, small, email="second@example.com")
    assert exc_info.value.code == "EVENT_FULL"


def test_cancelled_ticket_frees_capacity_and_slot(db, make_event):
    small = make_event(capacity=1)
    first = _register(db, small, email="first@example.com")

    registration_service.cancel_registration(db, first.attendance.id)

    again = _register(db, small, email="first@example.com")
    assert again.attendance.id != first.attendance.id
    assert again.attendance.qr_code_data != first.attendance.qr_code_data


def test_cancel_only_from_registered(db, event):
    result = _register(db, event)
    db.query(Attendance).filter(Attendance.id == result.attendance.id).update(
        {"status": AttendanceStatus.CHECKED_IN.value}
    )
    db.commit()

    with pytest.raises(InvalidStateError):
        registration_service.cancel_registration(db, result.attendance.id)


def test_cancel_is_idempotent(db, event):
    result = _register(db, event)
    registration_service.cancel_registration(db, result.attendance.id)
    attendance = registration_service.cancel_registration(db, result.attendance.id)
    assert attendance.status == AttendanceStatus.CANCELLED.value


def test_active_attendance_unique_index(db, event, make_contact):
    contact = make_contact()
    db.add(Attendance(contact_id=contact.id, event_id=event.id, qr_code_data="token-one"))
    db.commit()

    db.add(Attendance(contact_id=contact.id, event_id=event.id, qr_code_data="token-two"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


# =============================================================================
# HTTP
# =============================================================================

@pytest.mark.asyncio
async def test_register_endpoint(client, event):
    response = await client.post(
        "/register",
        json={
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "agree_updates": True,
            "event_slug": event.slug,
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["contact_id"]
    assert data["attendance_id"]


@pytest.mark.asyncio
async def test_register_endpoint_duplicate_returns_409(client, event):
    body = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "event_id": str(event.id),
    }
    assert (await client.post("/register", json=body)).status_code == 200

    response = await client.post("/register", json=body)
    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_REGISTERED"


@pytest.mark.asyncio
async def test_register_endpoint_requires_event(client):
    response = await client.post(
        "/register",
        json={"first_name": "Ada", "last_name": "L", "email": "ada@example.com"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_register_endpoint_rejects_bad_email(client, event):
    response = await client.post(
        "/register",
        json={
            "first_name": "Ada",
            "last_name": "L",
            "email": "not-an-email",
            "event_id": str(event.id),
        },
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_event_by_slug(client, event):
    response = await client.get(f"/events/{event.slug}")
    assert response.status_code == 200
    assert response.json()["name"] == event.name

    missing = await client.get("/events/no-such-event")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_create_event_endpoint(client):
    response = await client.post(
        "/events",
        json={
            "slug": "launch-night",
            "name": "Launch Night",
            "event_date": "2026-11-20T18:00:00Z",
            "capacity": 50,
        },
    )
    assert response.status_code == 201
    assert response.json()["slug"] == "launch-night"

    duplicate = await client.post(
        "/events",
        json={"slug": "launch-night", "name": "Again", "event_date": "2026-11-21T18:00:00Z"},
    )
    assert duplicate.status_code == 409


# =============================================================================
# Concurrent sign-ups
# =============================================================================

def test_concurrent_registrations_issue_one_ticket(db, event, run_concurrently):
    event_id = event.id

    def sign_up(session, index):
        email = "Ada@Example.com" if index % 2 else "ada@example.com"
        try:
            registration_service.register(
                session, email=email, first_name="Ada", agree_updates=True, event_id=event_id
            )
            return "registered"
        except AlreadyRegisteredError:
            return "already_registered"

    outcomes = run_concurrently(6, sign_up)

    assert Counter(outcomes) == {"registered": 1, "already_registered": 5}, outcomes
    db.rollback()
    assert db.query(Contact).filter(Contact.email == "ada@example.com").count() == 1
    assert db.query(Attendance).filter(Attendance.event_id == event_id).count() == 1
    assert (
        db.query(Job)
        .filter(Job.job_type == JobType.REGISTRATION_CONFIRMATION.value)
        .count()
        == 1
    )


def test_concurrent_registrations_respect_capacity(db, make_event, run_concurrently):
    event_id = make_event(capacity=2).id

    def sign_up(session, index):
        try:
            registration_service.register(
                session, email=f"guest{index}@example.com", event_id=event_id
            )
            return "registered"
        except EventFullError:
            return "event_full"

    outcomes = run_concurrently(5, sign_up)

    assert Counter(outcomes) == {"registered": 2, "event_full": 3}, outcomes
    db.rollback()
    assert registration_service.count_active_attendance(db, event_id) == 2
