"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

# Audit ledger metrics
audit_events_appended = Counter(
    "propledger_audit_events_appended_total",
    "Total audit events appended",
    ["entity", "action"],
)

audit_verifications = Counter(
    "propledger_audit_verifications_total",
    "Total audit chain verifications",
    ["result"],
)

# Webhook metrics
webhook_events_received = Counter(
    "propledger_webhook_events_received_total",
    "Total webhook deliveries by outcome",
    ["provider", "outcome"],  # processed, duplicate, rejected, failed
)

webhook_retries = Counter(
    "propledger_webhook_retries_total",
    "Total operator-triggered webhook retries",
    ["result"],
)

webhook_processing_duration = Histogram(
    "propledger_webhook_processing_duration_seconds",
    "Webhook processing duration",
    ["provider"],
)

# Allocation metrics
allocations_created = Counter(
    "propledger_allocations_created_total",
    "Total allocations created",
)

allocated_cents = Counter(
    "propledger_allocated_cents_total",
    "Total cents allocated to charges",
)

unallocated_cents = Counter(
    "propledger_unallocated_cents_total",
    "Total payment cents left unallocated (overpayments)",
)
