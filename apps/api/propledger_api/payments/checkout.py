"""Stripe Checkout session creation."""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from propledger_api.exceptions import (
    ChargeNotFoundError,
    CheckoutUnavailableError,
    CheckoutValidationError,
    TenantNotFoundError,
)
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.payments.service import PaymentService
from propledger_api.settings import Settings, get_settings
from propledger_api.tenants.provider import TenantDataProvider

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Checkout session handed back to the client."""

    session_id: str
    url: str
    payment_id: str
    amount_cents: int
    currency: str
    charge_id: Optional[str] = None


class CheckoutService(PaymentService):
    """Opens Stripe Checkout sessions for tenants.

    The session is created first, then a pending payment keyed by the
    session id is stored together with its ``checkout_created`` audit event.
    The caller commits. The ``checkout.session.completed`` webhook later
    marks that payment succeeded and allocates it.
    """

    def __init__(
        self,
        db: Session,
        org_id: str,
        tenant_provider: TenantDataProvider,
        settings: Optional[Settings] = None,
        provider: str = "stripe",
    ):
        """Initialize checkout service."""
        super().__init__(db, org_id)
        self.tenant_provider = tenant_provider
        self.settings = settings or get_settings()
        self.provider = provider

    def _amount_due(self, tenant_id: str, charge_id: Optional[str], amount_cents: Optional[int]) -> int:
        if charge_id:
            balance = self.get_charge_balance(charge_id)
            if balance is None or balance.tenant_id != tenant_id:
                raise ChargeNotFoundError(f"Charge {charge_id} not found for tenant {tenant_id}")
            if balance.remaining_cents <= 0:
                raise CheckoutValidationError(f"Charge {charge_id} is already fully paid")
            return balance.remaining_cents

        if amount_cents is None:
            raise CheckoutValidationError("Either chargeId or amountCents must be provided")
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 1:
            raise CheckoutValidationError("Amount must be at least 1 cent")
        return amount_cents

    def create_checkout(
        self,
        tenant_id: str,
        charge_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        currency: str = "usd",
        actor_id: Optional[str] = None,
    ) -> CheckoutResult:
        """Create a checkout session for a charge's remaining balance or a given amount."""
        org_id = self._enforce_org()
        if not self.settings.stripe_secret_key:
            raise CheckoutUnavailableError("STRIPE_SECRET_KEY is not configured")

        tenant = self.tenant_provider.get_tenant(self.db, org_id, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(org_id, tenant_id)

        amount = self._amount_due(tenant.id, charge_id, amount_cents)
        currency = (currency or "usd").lower()

        metadata = {"orgId": org_id, "tenantId": tenant.id}
        if charge_id:
            metadata["chargeId"] = charge_id

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {"name": f"Payment for {tenant.name}"},
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self.settings.checkout_success_url,
                cancel_url=self.settings.checkout_cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                api_key=self.settings.stripe_secret_key,
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe checkout creation failed: {e}",
                extra={"org_id": org_id, "tenant_id": tenant.id},
            )
            raise CheckoutUnavailableError(f"Checkout session could not be created: {e}") from e

        payment = self.record_pending_payment(
            tenant_id=tenant.id,
            provider=self.provider,
            provider_payment_id=session.id,
            amount_cents=amount,
            currency=currency,
        )

        audit_metadata = {
            "session_id": session.id,
            "amount_cents": amount,
            "currency": currency,
            "tenant_id": tenant.id,
        }
        if charge_id:
            audit_metadata["charge_id"] = charge_id
        AuditLedgerService(self.db).append(
            org_id=org_id,
            action="checkout_created",
            entity="payment",
            entity_id=payment.id,
            actor_id=actor_id,
            metadata=audit_metadata,
        )

        logger.info(
            f"Checkout created: {session.id} for {amount} cents",
            extra={"org_id": org_id, "payment_id": payment.id},
        )
        return CheckoutResult(
            session_id=session.id,
            url=session.url,
            payment_id=payment.id,
            amount_cents=amount,
            currency=currency,
            charge_id=charge_id,
        )
