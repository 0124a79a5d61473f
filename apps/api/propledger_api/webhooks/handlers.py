"""Handlers for payment provider events.

Each handler runs inside the ingestion transaction and must be safe to run
again for the same event: deliveries are at-least-once and may arrive out of
order.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from propledger_api.exceptions import PaymentMismatchError, PaymentNotFoundError, TenantNotFoundError
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.models import Payment, PaymentDispute
from propledger_api.payments.allocator import PaymentAllocator
from propledger_api.payments.service import PaymentService
from propledger_api.tenants.provider import TenantDataProvider

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict], None]


def extract_org_id(obj: dict[str, Any]) -> Optional[str]:
    """Get the organization id from event object metadata."""
    metadata = obj.get("metadata") or {}
    return metadata.get("orgId") or metadata.get("organization_id")


def extract_tenant_id(obj: dict[str, Any]) -> Optional[str]:
    """Get the tenant id from event object metadata."""
    metadata = obj.get("metadata") or {}
    return metadata.get("tenantId") or metadata.get("tenant_id")


def _first_amount(obj: dict[str, Any], keys: tuple[str, ...]) -> Optional[int]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


class PaymentEventHandlers:
    """Stripe event handlers for payments and disputes."""

    def __init__(self, tenant_provider: TenantDataProvider, provider: str = "stripe"):
        """Initialize handlers."""
        self.tenant_provider = tenant_provider
        self.provider = provider

    def _require_org(self, obj: dict[str, Any]) -> str:
        org_id = extract_org_id(obj)
        if not org_id:
            raise ValueError("Organization ID not found in webhook metadata")
        return org_id

    def checkout_session_completed(self, db: Session, event: dict) -> None:
        """Checkout session paid.

        This is the only event that creates and succeeds checkout payments.
        The session's payment intent is linked to the payment so the intent's
        own events resolve to the same row.
        """
        obj = event["data"]["object"]
        org_id = self._require_org(obj)
        tenant_id = extract_tenant_id(obj)

        tenant = self.tenant_provider.get_tenant(db, org_id, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(org_id, tenant_id)

        payments = PaymentService(db, org_id)
        payment = payments.find_payment(self.provider, obj["id"])
        if payment is None:
            amount = _first_amount(obj, ("amount_total",))
            if amount is None:
                raise PaymentNotFoundError(
                    f"No payment recorded for {obj['id']} and the event carries no amount"
                )
            payment = payments.record_pending_payment(
                tenant_id=tenant.id,
                provider=self.provider,
                provider_payment_id=obj["id"],
                amount_cents=amount,
                currency=obj.get("currency") or "usd",
            )
            logger.info(
                f"Recorded payment {payment.id} from provider event {event['id']}",
                extra={"org_id": org_id, "provider_payment_id": obj["id"]},
            )
        elif payment.tenant_id != tenant.id:
            raise PaymentMismatchError(
                f"Payment {payment.id} belongs to tenant {payment.tenant_id}, event names {tenant.id}"
            )

        intent_id = obj.get("payment_intent")
        if isinstance(intent_id, str) and intent_id and payment.provider_payment_intent_id is None:
            payment.provider_payment_intent_id = intent_id
            db.flush()

        self._allocate(db, payment, org_id, obj["id"])

    def payment_intent_succeeded(self, db: Session, event: dict) -> None:
        """Payment intent captured.

        Only confirms a payment we already hold for the intent. Intents
        behind a checkout session are allocated by the session event, so an
        unknown intent is logged and left alone.
        """
        obj = event["data"]["object"]
        org_id = extract_org_id(obj)
        if not org_id:
            logger.info(f"Payment intent {obj['id']} has no organization, ignoring")
            return

        payment = PaymentService(db, org_id).find_payment_for_intent(self.provider, obj["id"], lock=True)
        if payment is None:
            logger.info(
                f"Payment intent {obj['id']} is not linked to a payment yet, ignoring",
                extra={"org_id": org_id, "event_id": event["id"]},
            )
            return

        self._allocate(db, payment, org_id, obj["id"])

    def _allocate(self, db: Session, payment: Payment, org_id: str, provider_ref: str) -> None:
        result = PaymentAllocator(db).on_payment_succeeded(payment.id)
        logger.info(
            f"Payment processed: {provider_ref} allocated {result.allocated_cents} cents",
            extra={"org_id": org_id, "payment_id": payment.id, "already_processed": result.already_processed},
        )

    def payment_intent_failed(self, db: Session, event: dict) -> None:
        """Record a failed payment attempt on the payment's audit trail."""
        obj = event["data"]["object"]
        org_id = extract_org_id(obj)
        if not org_id:
            logger.info(f"Payment failure {obj['id']} has no organization, ignoring")
            return

        # Held until commit so concurrent events for this payment append to its chain in turn.
        payment = PaymentService(db, org_id).find_payment_for_intent(self.provider, obj["id"], lock=True)
        if payment is None:
            logger.info(
                f"Payment failure for unknown payment {obj['id']}",
                extra={"org_id": org_id},
            )
            return

        last_error = obj.get("last_payment_error") or {}
        AuditLedgerService(db).append(
            org_id=org_id,
            action="payment_failed",
            entity="payment",
            entity_id=payment.id,
            metadata={
                "provider_payment_id": obj["id"],
                "event_id": event["id"],
                "failure_code": last_error.get("code"),
                "failure_message": last_error.get("message"),
            },
        )

    def charge_dispute_created(self, db: Session, event: dict) -> None:
        """Record a dispute, once per provider dispute id."""
        obj = event["data"]["object"]
        org_id = self._require_org(obj)

        due_by = (obj.get("evidence_details") or {}).get("due_by")
        evidence_due_by = datetime.utcfromtimestamp(due_by) if isinstance(due_by, int) else None

        dispute = (
            db.query(PaymentDispute)
            .filter(PaymentDispute.provider_dispute_id == obj["id"])
            .first()
        )
        if dispute is not None:
            if dispute.status == obj.get("status") and dispute.amount_cents == obj.get("amount"):
                logger.info(f"Dispute {obj['id']} unchanged, skipping")
                return
            action = "dispute_updated"
        else:
            dispute = PaymentDispute(org_id=org_id, provider_dispute_id=obj["id"])
            db.add(dispute)
            action = "dispute_recorded"

        dispute.provider_charge_id = obj.get("charge")
        dispute.provider_payment_intent_id = obj.get("payment_intent")
        dispute.amount_cents = obj.get("amount") or 0
        dispute.currency = obj.get("currency") or "usd"
        dispute.reason = obj.get("reason")
        dispute.status = obj.get("status") or "needs_response"
        dispute.evidence_due_by = evidence_due_by
        db.flush()

        AuditLedgerService(db).append(
            org_id=dispute.org_id,
            action=action,
            entity="dispute",
            entity_id=dispute.id,
            metadata={
                "provider_dispute_id": obj["id"],
                "provider_charge_id": dispute.provider_charge_id,
                "amount_cents": dispute.amount_cents,
                "reason": dispute.reason,
                "status": dispute.status,
            },
        )
        logger.info(
            f"Payment dispute recorded: {obj['id']} ({dispute.reason})",
            extra={"org_id": dispute.org_id, "amount_cents": dispute.amount_cents},
        )


def build_handler_registry(tenant_provider: TenantDataProvider) -> dict[str, Handler]:
    """Map Stripe event types to their handlers."""
    handlers = PaymentEventHandlers(tenant_provider)
    return {
        "checkout.session.completed": handlers.checkout_session_completed,
        "payment_intent.succeeded": handlers.payment_intent_succeeded,
        "payment_intent.payment_failed": handlers.payment_intent_failed,
        "charge.dispute.created": handlers.charge_dispute_created,
    }
