"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database, schema rebuilt for every test
- Database session + HTTPX AsyncClient against the app
- Factories for events, contacts and campaigns
- A fake mail transport that records what would have been sent
- A helper that races one call across threads, each with its own session
"""
import os
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import AsyncGenerator, Generator, Sequence

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

_TEST_DIR = tempfile.mkdtemp(prefix="eventcrm-tests-")

# Settings are read at import time; pin everything before the app loads
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["ENV"] = "test"
os.environ["ADMIN_API_KEY"] = ""
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["MAILGUN_API_KEY"] = ""
os.environ["RESEND_WEBHOOK_SECRET"] = ""
os.environ["CAMPAIGN_SEND_DELAY_SECONDS"] = "0"
os.environ["SENTRY_DSN"] = ""

from eventcrm.db.base import Base
from eventcrm.db.models import Campaign, Contact, Event
from eventcrm.db.session import SessionLocal, engine
from eventcrm.main import app
from eventcrm.services.email_transport import (
    DeliveryReceipt,
    OutboundEmail,
    TransportChain,
)
from eventcrm.core.exceptions import DeliveryUnknownError, TransientDependencyError
from eventcrm.utils.datetime_utils import utcnow


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _schema() -> Generator[None, None, None]:
    """Fresh schema per test; app code commits freely."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
async def client() -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient against the ASGI app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_event(db: Session):
    def _make(**overrides) -> Event:
        values = {
            "slug": f"event-{uuid.uuid4().hex[:8]}",
            "name": "Community Meetup",
            "event_date": utcnow() + timedelta(days=14),
            "location": "Main Hall",
            "capacity": None,
            "registration_open": True,
        }
        values.update(overrides)
        event = Event(**values)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make


@pytest.fixture
def event(make_event) -> Event:
    return make_event()


@pytest.fixture
def make_contact(db: Session):
    def _make(**overrides) -> Contact:
        values = {
            "email": f"person-{uuid.uuid4().hex[:8]}@example.com",
            "first_name": "Test",
            "last_name": "Person",
            "unsubscribed": False,
        }
        values.update(overrides)
        contact = Contact(**values)
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact

    return _make


@pytest.fixture
def make_campaign(db: Session):
    def _make(**overrides) -> Campaign:
        values = {
            "name": "October Newsletter",
            "subject": "Hello {{first_name}}",
            "body_html": "<html><body><p>Hi {{first_name}}, see you at the meetup.</p></body></html>",
            "body_text": "Hi {{first_name}}, see you at the meetup.",
        }
        values.update(overrides)
        campaign = Campaign(**values)
        db.add(campaign)
        db.commit()
        db.refresh(campaign)
        return campaign

    return _make


@pytest.fixture
def campaign(make_campaign) -> Campaign:
    return make_campaign()


# =============================================================================
# Mail transport
# =============================================================================

class FakeTransport:
    """In-memory transport; ``fail_for`` addresses raise on send."""

    def __init__(
        self,
        key: str = "fake",
        *,
        batch_limit: int = 0,
        fail_for: Sequence[str] = (),
        fail_batch: bool = False,
        unknown_batch: bool = False,
    ):
        self.key = key
        self.batch_limit = batch_limit
        self.fail_for = {email.lower() for email in fail_for}
        self.fail_batch = fail_batch
        self.unknown_batch = unknown_batch
        self.batch_keys: list[str | None] = []
        self.sent: list[OutboundEmail] = []
        self.batches: list[list[OutboundEmail]] = []

    def is_configured(self) -> bool:
        return True

    async def send(self, message: OutboundEmail) -> DeliveryReceipt:
        if message.to.lower() in self.fail_for:
            raise TransientDependencyError(f"{self.key} rejected {message.to}")
        self.sent.append(message)
        return DeliveryReceipt(provider=self.key, message_id=f"{self.key}-{len(self.sent)}")

    async def send_batch(
        self, messages: Sequence[OutboundEmail], *, idempotency_key: str | None = None
    ) -> list[DeliveryReceipt]:
        self.batch_keys.append(idempotency_key)
        if self.unknown_batch:
            raise DeliveryUnknownError(f"{self.key} batch timed out")
        if self.fail_batch:
            raise TransientDependencyError(f"{self.key} batch unavailable")
        self.batches.append(list(messages))
        receipts = []
        for message in messages:
            self.sent.append(message)
            receipts.append(
                DeliveryReceipt(provider=self.key, message_id=f"{self.key}-{len(self.sent)}")
            )
        return receipts


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_chain(fake_transport: FakeTransport) -> TransportChain:
    return TransportChain([fake_transport])


@pytest.fixture
def transport_factory():
    """Build extra FakeTransports (failing, batching, secondary providers)."""
    return FakeTransport


# =============================================================================
# Concurrency
# =============================================================================

@pytest.fixture
def run_concurrently():
    """
    Call ``fn(session, index)`` from ``count`` threads released at once.

    Each thread gets its own SessionLocal(), as separate API workers would.
    Returns each call's result, or the exception it raised.
    """

    def _run(count: int, fn) -> list:
        barrier = threading.Barrier(count)

        def worker(index: int):
            session = SessionLocal()
            try:
                barrier.wait(timeout=10)
                return fn(session, index)
            except Exception as exc:
                return exc
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=count) as pool:
            return list(pool.map(worker, range(count)))

    return _run
