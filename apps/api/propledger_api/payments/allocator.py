"""Oldest-first payment allocation."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from propledger_api.exceptions import PaymentMismatchError, PaymentNotFoundError
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.models import Allocation, Charge, Payment
from propledger_api.models.payment import (
    CHARGE_PAID,
    CHARGE_PARTIALLY_PAID,
    OUTSTANDING_CHARGE_STATUSES,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
)
from propledger_api.payments.service import allocated_by_charge
from propledger_api.utils.metrics import allocated_cents, allocations_created, unallocated_cents

logger = logging.getLogger(__name__)


@dataclass
class AllocationLine:
    """One allocation made for a payment."""

    allocation_id: str
    charge_id: str
    amount_cents: int
    charge_status: str
    charge_remaining_cents: int


@dataclass
class AllocationResult:
    """Outcome of allocating a payment."""

    payment_id: str
    allocations: list[AllocationLine] = field(default_factory=list)
    allocated_cents: int = 0
    remaining_unallocated_cents: int = 0
    already_processed: bool = False


class PaymentAllocator:
    """Applies a succeeded payment to a tenant's charges, oldest due date first.

    Runs inside the caller's transaction and never commits. Any exception
    leaves the transaction to be rolled back, so no partial allocation can
    persist.
    """

    def __init__(self, db: Session, ledger: Optional[AuditLedgerService] = None):
        """Initialize allocator."""
        self.db = db
        self.ledger = ledger or AuditLedgerService(db)

    def _mark_succeeded(self, payment_id: str) -> bool:
        """Transition pending -> succeeded; False if another call already did."""
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
            .values(status=PAYMENT_SUCCEEDED, received_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _outstanding_charges_query(self, payment: Payment):
        """Tenant's unpaid charges, oldest first, locked FOR UPDATE."""
        return (
            self.db.query(Charge)
            .filter(
                Charge.org_id == payment.org_id,
                Charge.tenant_id == payment.tenant_id,
                Charge.status.in_(OUTSTANDING_CHARGE_STATUSES),
            )
            .order_by(Charge.due_date.asc(), Charge.created_at.asc(), Charge.id.asc())
            .with_for_update()
        )

    def _outstanding_charges(self, payment: Payment) -> list[Charge]:
        return self._outstanding_charges_query(payment).all()

    def on_payment_succeeded(self, payment_id: str, actor_id: Optional[str] = None) -> AllocationResult:
        """Mark a payment succeeded and allocate it across outstanding charges."""
        transitioned = self._mark_succeeded(payment_id)
        payment = (
            self.db.query(Payment)
            .filter(Payment.id == payment_id)
            .populate_existing()
            .first()
        )
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")

        if not transitioned:
            if payment.status == PAYMENT_SUCCEEDED:
                logger.info(
                    f"Payment {payment_id} already succeeded, skipping allocation",
                    extra={"org_id": payment.org_id, "payment_id": payment_id},
                )
                return AllocationResult(payment_id=payment_id, already_processed=True)
            raise PaymentMismatchError(f"Payment {payment_id} has unexpected status {payment.status}")

        if payment.amount_cents is None or payment.amount_cents < 0:
            raise PaymentMismatchError(f"Payment {payment_id} has invalid amount {payment.amount_cents}")

        charges = self._outstanding_charges(payment)
        allocated = allocated_by_charge(self.db, [c.id for c in charges])

        result = AllocationResult(payment_id=payment.id)
        remaining = payment.amount_cents

        for charge in charges:
            if remaining <= 0:
                break

            balance = charge.amount_cents - allocated.get(charge.id, 0)
            if balance <= 0:
                logger.warning(
                    f"Charge {charge.id} is {charge.status} but has no remaining balance",
                    extra={"org_id": payment.org_id, "charge_id": charge.id},
                )
                continue

            amount = min(remaining, balance)
            new_status = CHARGE_PAID if amount == balance else CHARGE_PARTIALLY_PAID

            allocation = Allocation(
                org_id=payment.org_id,
                payment_id=payment.id,
                charge_id=charge.id,
                amount_cents=amount,
            )
            self.db.add(allocation)
            charge.status = new_status
            self.db.flush()

            self.ledger.append(
                org_id=payment.org_id,
                action="allocation_created",
                entity="charge",
                entity_id=charge.id,
                actor_id=actor_id,
                metadata={
                    "payment_id": payment.id,
                    "allocation_id": allocation.id,
                    "amount_cents": amount,
                    "new_status": new_status,
                    "remaining_cents": balance - amount,
                },
            )

            remaining -= amount
            result.allocations.append(
                AllocationLine(
                    allocation_id=allocation.id,
                    charge_id=charge.id,
                    amount_cents=amount,
                    charge_status=new_status,
                    charge_remaining_cents=balance - amount,
                )
            )
            allocations_created.inc()
            allocated_cents.inc(amount)
            logger.info(
                f"Allocated {amount} cents to charge {charge.id} ({charge.description})",
                extra={"org_id": payment.org_id, "payment_id": payment.id},
            )

        result.allocated_cents = payment.amount_cents - remaining
        result.remaining_unallocated_cents = remaining

        if remaining > 0:
            unallocated_cents.inc(remaining)
            logger.info(
                f"Overpayment of {remaining} cents left unallocated on payment {payment.id}",
                extra={"org_id": payment.org_id, "payment_id": payment.id},
            )

        self.ledger.append(
            org_id=payment.org_id,
            action="payment_received",
            entity="payment",
            entity_id=payment.id,
            actor_id=actor_id,
            metadata={
                "amount_cents": payment.amount_cents,
                "allocated_cents": result.allocated_cents,
                "unallocated_cents": remaining,
                "provider_payment_id": payment.provider_payment_id,
                "tenant_id": payment.tenant_id,
            },
        )
        return result
