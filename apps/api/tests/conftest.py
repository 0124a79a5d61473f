"""Pytest configuration and fixtures for integration tests."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import hashlib
import hmac
import json
import time
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from propledger_api.db.base import Base
from propledger_api.models import Charge, Organization, Tenant
from propledger_api.settings import Settings
from propledger_api.tenants.provider import DatabaseTenantDataProvider
from propledger_api.webhooks.handlers import build_handler_registry
from propledger_api.webhooks.service import WebhookIngestor


# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite:///:memory:"
)

TEST_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function")
def engine():
    """
    Create a test database engine.

    For integration tests, use TEST_DATABASE_URL environment variable
    to point to a real PostgreSQL instance.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        # PostgreSQL for integration tests
        engine = create_engine(TEST_DATABASE_URL)

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Session:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with signature verification against a known test secret."""
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        allow_insecure_webhook_test=False,
    )


@pytest.fixture
def test_org(db: Session) -> Organization:
    """Create a test organization."""
    org = Organization(name="Test Property Co")
    db.add(org)
    db.commit()
    return org


@pytest.fixture
def test_tenant(db: Session, test_org: Organization) -> Tenant:
    """Create a test renter."""
    tenant = Tenant(org_id=test_org.id, name="Test Renter", email="renter@example.com")
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def test_charges(db: Session, test_org: Organization, test_tenant: Tenant) -> tuple[Charge, Charge]:
    """Create two outstanding charges: 5000 due in January, 12000 due in February."""
    charge_a = Charge(
        org_id=test_org.id,
        tenant_id=test_tenant.id,
        description="January rent",
        amount_cents=5000,
        due_date=date(2024, 1, 1),
    )
    charge_b = Charge(
        org_id=test_org.id,
        tenant_id=test_tenant.id,
        description="February rent",
        amount_cents=12000,
        due_date=date(2024, 2, 1),
    )
    # Inserted newest first; allocation order must come from due_date
    db.add(charge_b)
    db.flush()
    db.add(charge_a)
    db.commit()
    return charge_a, charge_b


@pytest.fixture
def ingestor(session_factory, test_settings) -> WebhookIngestor:
    """Webhook ingestor wired to the test database."""
    handlers = build_handler_registry(DatabaseTenantDataProvider())
    return WebhookIngestor(session_factory, handlers, settings=test_settings)


def sign_payload(raw_body: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header over the raw body bytes."""
    timestamp = timestamp or int(time.time())
    message = str(timestamp).encode("utf-8") + b"." + raw_body
    signature = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_id: str,
    event_type: str,
    obj: dict,
) -> bytes:
    """Build a raw provider event envelope."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode("utf-8")


def checkout_completed(
    event_id: str,
    org_id: str,
    tenant_id: str,
    amount_total: int,
    session_id: str = "cs_test_0001",
    payment_intent: str = None,
) -> bytes:
    """Build a checkout.session.completed event."""
    return make_event(
        event_id,
        "checkout.session.completed",
        {
            "id": session_id,
            "object": "checkout.session",
            "amount_total": amount_total,
            "currency": "usd",
            "payment_intent": payment_intent,
            "metadata": {"orgId": org_id, "tenantId": tenant_id},
        },
    )


def payment_intent_succeeded(
    event_id: str,
    org_id: str,
    tenant_id: str,
    amount_received: int,
    payment_intent: str = "pi_test_0001",
) -> bytes:
    """Build a payment_intent.succeeded event."""
    return make_event(
        event_id,
        "payment_intent.succeeded",
        {
            "id": payment_intent,
            "object": "payment_intent",
            "amount": amount_received,
            "amount_received": amount_received,
            "currency": "usd",
            "metadata": {"orgId": org_id, "tenantId": tenant_id},
        },
    )
