"""Charge, payment, allocation and dispute models.

All amounts are integer cents. A charge's allocated and remaining balances
are derived from its allocations and never stored.
"""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from propledger_api.db.base import Base
from propledger_api.models.tenant import generate_uuid

CHARGE_UNPAID = "unpaid"
CHARGE_PARTIALLY_PAID = "partially_paid"
CHARGE_PAID = "paid"
OUTSTANDING_CHARGE_STATUSES = (CHARGE_UNPAID, CHARGE_PARTIALLY_PAID)

PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"


class Charge(Base):
    """Amount billed to a tenant."""

    __tablename__ = "charges"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    description = Column(Text, nullable=True)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(String(50), default=CHARGE_UNPAID, nullable=False)  # unpaid, partially_paid, paid
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    allocations = relationship("Allocation", back_populates="charge")

    __table_args__ = (
        Index("ix_charges_tenant_outstanding", "tenant_id", "status", "due_date", "created_at"),
        CheckConstraint("amount_cents >= 0", name="ck_charges_amount_non_negative"),
    )


class Payment(Base):
    """Payment received from a provider; pending until the provider confirms it."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    provider = Column(String(50), default="stripe", nullable=False)
    provider_payment_id = Column(String(255), nullable=False)  # Checkout session / payment intent id
    provider_payment_intent_id = Column(String(255), nullable=True, index=True)  # Intent behind a checkout session
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(50), default=PAYMENT_PENDING, nullable=False)  # pending, succeeded
    received_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    allocations = relationship("Allocation", back_populates="payment")

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment"),
        CheckConstraint("amount_cents >= 0", name="ck_payments_amount_non_negative"),
    )


class Allocation(Base):
    """Portion of a payment applied to a charge."""

    __tablename__ = "allocations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    charge_id = Column(String(36), ForeignKey("charges.id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    payment = relationship("Payment", back_populates="allocations")
    charge = relationship("Charge", back_populates="allocations")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_allocations_amount_positive"),
    )


class PaymentDispute(Base):
    """Chargeback opened by the card network against a payment."""

    __tablename__ = "payment_disputes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    provider_dispute_id = Column(String(255), nullable=False, unique=True)
    provider_charge_id = Column(String(255), nullable=True)
    provider_payment_intent_id = Column(String(255), nullable=True, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    reason = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False)
    evidence_due_by = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
