"""Seed data for development and testing."""

import logging
from datetime import date

from sqlalchemy.orm import Session

from propledger_api.models import Charge, Organization, Payment, Tenant
from propledger_api.models.payment import CHARGE_UNPAID, PAYMENT_PENDING
from propledger_api.tenants.provider import TenantRecord

logger = logging.getLogger(__name__)

DEMO_ORG_ID = "00000000-0000-4000-8000-000000000001"
DEMO_ORG_NAME = "Demo Property Management"

FIXTURE_TENANTS = (
    TenantRecord(id="00000000-0000-4000-8000-000000000101", org_id=DEMO_ORG_ID, name="Ada Renter"),
    TenantRecord(id="00000000-0000-4000-8000-000000000102", org_id=DEMO_ORG_ID, name="Grace Lessee"),
)

# (tenant index, description, amount_cents, due_date)
DEMO_CHARGES = (
    (0, "January rent", 5000, date(2024, 1, 1)),
    (0, "February rent", 12000, date(2024, 2, 1)),
    (1, "January rent", 9500, date(2024, 1, 1)),
)

DEMO_PENDING_PAYMENT = ("cs_test_demo_0001", 0, 7500)


def seed_organization(db: Session) -> Organization:
    """Seed the demo organization and its tenants."""
    org = db.query(Organization).filter(Organization.id == DEMO_ORG_ID).first()
    if not org:
        org = Organization(id=DEMO_ORG_ID, name=DEMO_ORG_NAME)
        db.add(org)
        db.flush()

    for record in FIXTURE_TENANTS:
        if not db.query(Tenant).filter(Tenant.id == record.id).first():
            db.add(Tenant(id=record.id, org_id=record.org_id, name=record.name, status="active"))
    db.flush()
    return org


def seed_charges(db: Session):
    """Seed outstanding charges for the demo tenants."""
    for tenant_index, description, amount_cents, due_date in DEMO_CHARGES:
        tenant_id = FIXTURE_TENANTS[tenant_index].id
        exists = (
            db.query(Charge)
            .filter(
                Charge.tenant_id == tenant_id,
                Charge.description == description,
                Charge.due_date == due_date,
            )
            .first()
        )
        if not exists:
            db.add(
                Charge(
                    org_id=DEMO_ORG_ID,
                    tenant_id=tenant_id,
                    description=description,
                    amount_cents=amount_cents,
                    due_date=due_date,
                    status=CHARGE_UNPAID,
                )
            )
    db.flush()


def seed_payments(db: Session):
    """Seed a pending checkout payment awaiting its webhook."""
    provider_payment_id, tenant_index, amount_cents = DEMO_PENDING_PAYMENT
    exists = (
        db.query(Payment)
        .filter(Payment.provider == "stripe", Payment.provider_payment_id == provider_payment_id)
        .first()
    )
    if not exists:
        db.add(
            Payment(
                org_id=DEMO_ORG_ID,
                tenant_id=FIXTURE_TENANTS[tenant_index].id,
                provider="stripe",
                provider_payment_id=provider_payment_id,
                amount_cents=amount_cents,
                status=PAYMENT_PENDING,
            )
        )
    db.flush()


def seed_all(db: Session):
    """Seed all demo data."""
    seed_organization(db)
    seed_charges(db)
    seed_payments(db)
    db.commit()
    logger.info("Demo data seeded")
