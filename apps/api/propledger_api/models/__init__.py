"""Database models - import all models here for Alembic discovery."""

from propledger_api.models.audit import AuditEvent
from propledger_api.models.payment import Allocation, Charge, Payment, PaymentDispute
from propledger_api.models.tenant import Organization, Tenant
from propledger_api.models.webhook import WebhookEvent, WebhookFailure

__all__ = [
    "Organization",
    "Tenant",
    "AuditEvent",
    "Charge",
    "Payment",
    "Allocation",
    "PaymentDispute",
    "WebhookEvent",
    "WebhookFailure",
]
