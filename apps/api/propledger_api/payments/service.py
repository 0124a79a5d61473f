"""Payment and charge queries shared by the allocator, handlers and routes."""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from propledger_api.models import Allocation, Charge, Payment
from propledger_api.models.payment import PAYMENT_PENDING
from propledger_api.services.base import BaseService


@dataclass
class ChargeBalance:
    """Charge with its derived balances."""

    id: str
    tenant_id: str
    description: Optional[str]
    amount_cents: int
    allocated_cents: int
    remaining_cents: int
    currency: str
    due_date: date
    status: str


def allocated_by_charge(db: Session, charge_ids: Iterable[str]) -> dict[str, int]:
    """Sum allocations per charge."""
    charge_ids = list(charge_ids)
    if not charge_ids:
        return {}
    rows = (
        db.query(Allocation.charge_id, func.coalesce(func.sum(Allocation.amount_cents), 0))
        .filter(Allocation.charge_id.in_(charge_ids))
        .group_by(Allocation.charge_id)
        .all()
    )
    return {charge_id: int(total) for charge_id, total in rows}


class PaymentService(BaseService):
    """Organization-scoped reads and writes for payments and charges."""

    def get_charge_balance(self, charge_id: str, org_id: Optional[str] = None) -> Optional[ChargeBalance]:
        """Get a charge with allocated and remaining cents."""
        query = self._ensure_org_filter(self.db.query(Charge), org_id)
        charge = query.filter(Charge.id == charge_id).first()
        if not charge:
            return None

        allocated = allocated_by_charge(self.db, [charge.id]).get(charge.id, 0)
        return ChargeBalance(
            id=charge.id,
            tenant_id=charge.tenant_id,
            description=charge.description,
            amount_cents=charge.amount_cents,
            allocated_cents=allocated,
            remaining_cents=charge.amount_cents - allocated,
            currency=charge.currency,
            due_date=charge.due_date,
            status=charge.status,
        )

    def list_payment_allocations(self, payment_id: str, org_id: Optional[str] = None) -> list[Allocation]:
        """List allocations of a payment in creation order."""
        query = self._ensure_org_filter(self.db.query(Allocation), org_id)
        return (
            query.filter(Allocation.payment_id == payment_id)
            .order_by(Allocation.created_at.asc(), Allocation.id.asc())
            .all()
        )

    def find_payment(self, provider: str, provider_payment_id: str, org_id: Optional[str] = None) -> Optional[Payment]:
        """Find a payment by its provider reference."""
        query = self._ensure_org_filter(self.db.query(Payment), org_id)
        return query.filter(
            Payment.provider == provider,
            Payment.provider_payment_id == provider_payment_id,
        ).first()

    def find_payment_for_intent(
        self, provider: str, payment_intent_id: str, org_id: Optional[str] = None, lock: bool = False
    ) -> Optional[Payment]:
        """Find the payment a payment intent belongs to.

        Matches payments recorded under the intent id itself as well as
        checkout payments linked to the intent when their session completed.
        With ``lock`` the row is held FOR UPDATE until the transaction ends.
        """
        query = self._ensure_org_filter(self.db.query(Payment), org_id).filter(
            Payment.provider == provider,
            or_(
                Payment.provider_payment_id == payment_intent_id,
                Payment.provider_payment_intent_id == payment_intent_id,
            ),
        )
        if lock:
            query = query.with_for_update()
        return query.order_by(Payment.created_at.asc(), Payment.id.asc()).first()

    def record_pending_payment(
        self,
        tenant_id: str,
        provider: str,
        provider_payment_id: str,
        amount_cents: int,
        currency: str = "usd",
        org_id: Optional[str] = None,
    ) -> Payment:
        """Record a payment the provider reported before we stored it."""
        org_id = self._enforce_org(org_id)
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 0:
            raise ValueError(f"Payment amount must be a non-negative integer of cents, got {amount_cents!r}")

        payment = Payment(
            org_id=org_id,
            tenant_id=tenant_id,
            provider=provider,
            provider_payment_id=provider_payment_id,
            amount_cents=amount_cents,
            currency=currency,
            status=PAYMENT_PENDING,
        )
        self.db.add(payment)
        self.db.flush()
        return payment
