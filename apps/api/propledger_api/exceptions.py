"""Exceptions raised by the ledger, allocation and webhook services."""

from typing import Optional


class WebhookValidationError(Exception):
    """Webhook rejected before deduplication (bad signature or malformed envelope)."""


class WebhookProcessingError(Exception):
    """A webhook handler failed; the event has been dead-lettered."""

    def __init__(self, message: str, provider: str, event_id: str, failure_id: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.event_id = event_id
        self.failure_id = failure_id


class TenantNotFoundError(Exception):
    """Tenant referenced by an event cannot be resolved for the organization."""

    def __init__(self, org_id: str, tenant_id: Optional[str]):
        super().__init__(f"Tenant {tenant_id!r} not found in organization {org_id}")
        self.org_id = org_id
        self.tenant_id = tenant_id


class PaymentNotFoundError(Exception):
    """Payment does not exist."""


class PaymentMismatchError(Exception):
    """Event data disagrees with the stored payment."""


class TransactionConflictError(Exception):
    """Transaction kept failing with serialization or deadlock conflicts."""


class AuditImmutableError(Exception):
    """Audit rows cannot be updated or deleted."""


class ChargeNotFoundError(Exception):
    """Charge does not exist in the organization."""


class CheckoutValidationError(Exception):
    """Checkout request cannot be turned into a payable amount."""


class CheckoutUnavailableError(Exception):
    """Checkout sessions cannot be created (provider not configured or failing)."""
