"""Tests for webhook ingestion, deduplication, dead-lettering and retry."""

import json
import time

import pytest
from sqlalchemy.orm import Session

from conftest import checkout_completed, make_event, payment_intent_succeeded, sign_payload
from propledger_api.exceptions import WebhookProcessingError, WebhookValidationError
from propledger_api.ledger.service import AuditLedgerService
from propledger_api.models import (
    Allocation,
    AuditEvent,
    Charge,
    Payment,
    PaymentDispute,
    Tenant,
    WebhookEvent,
    WebhookFailure,
)
from propledger_api.models.payment import CHARGE_PAID, CHARGE_PARTIALLY_PAID, PAYMENT_SUCCEEDED
from propledger_api.tenants.provider import DatabaseTenantDataProvider
from propledger_api.webhooks.handlers import build_handler_registry
from propledger_api.webhooks.service import WebhookIngestor


def deliver(ingestor, raw_body: bytes):
    return ingestor.receive(raw_body, sign_payload(raw_body))


def test_identical_deliveries_processed_once(db: Session, ingestor, test_org, test_tenant, test_charges):
    """Five deliveries of one event store one envelope and allocate once."""
    raw_body = checkout_completed("evt_dup_1", test_org.id, test_tenant.id, 7500)

    receipts = [deliver(ingestor, raw_body) for _ in range(5)]

    assert [r.duplicate for r in receipts] == [False, True, True, True, True]
    assert all(r.received for r in receipts)

    db.expire_all()
    assert db.query(WebhookEvent).count() == 1
    assert db.query(Payment).count() == 1
    assert db.query(Allocation).count() == 2
    assert db.query(WebhookFailure).count() == 0

    charge_a, charge_b = test_charges
    db.refresh(charge_a)
    db.refresh(charge_b)
    assert charge_a.status == CHARGE_PAID
    assert charge_b.status == CHARGE_PARTIALLY_PAID


def test_checkout_completed_settles_pending_payment(db: Session, ingestor, test_org, test_tenant, test_charges):
    """A payment recorded before the event is marked succeeded and allocated."""
    payment = Payment(
        org_id=test_org.id,
        tenant_id=test_tenant.id,
        provider="stripe",
        provider_payment_id="cs_test_pending",
        amount_cents=5000,
    )
    db.add(payment)
    db.commit()

    raw_body = checkout_completed(
        "evt_pending_1", test_org.id, test_tenant.id, 5000, session_id="cs_test_pending"
    )
    deliver(ingestor, raw_body)

    db.expire_all()
    assert db.query(Payment).count() == 1
    assert payment.status == PAYMENT_SUCCEEDED
    trail = AuditLedgerService(db).get_trail(test_org.id, "payment", payment.id)
    assert [e.action for e in trail] == ["payment_received"]


def test_unresolvable_tenant_dead_lettered_then_retried(db: Session, ingestor, test_org, test_tenant, test_charges):
    """Unknown tenant fails before any write; retry after correcting the payload succeeds."""
    raw_body = checkout_completed("evt_bad_tenant", test_org.id, "no-such-tenant", 7500)

    with pytest.raises(WebhookProcessingError) as exc_info:
        deliver(ingestor, raw_body)
    assert exc_info.value.event_id == "evt_bad_tenant"
    assert exc_info.value.failure_id is not None

    db.expire_all()
    assert db.query(WebhookEvent).count() == 0
    assert db.query(Payment).count() == 0
    assert db.query(AuditEvent).count() == 0

    failure = db.query(WebhookFailure).one()
    assert failure.retry_count == 0
    assert failure.resolved_at is None
    assert "no-such-tenant" in failure.error_message

    # Operator corrects the stored payload
    corrected = json.loads(failure.payload)
    corrected["data"]["object"]["metadata"]["tenantId"] = test_tenant.id
    failure.payload = json.dumps(corrected)
    db.commit()

    result = ingestor.retry(failure.id)
    assert result.success
    assert result.message == "Webhook retried successfully"

    db.expire_all()
    failure = db.query(WebhookFailure).one()
    assert failure.retry_count == 1
    assert failure.resolved_at is not None
    assert failure.last_retry_at is not None
    assert db.query(WebhookEvent).count() == 1
    assert db.query(Allocation).count() == 2

    again = ingestor.retry(failure.id)
    assert not again.success
    assert again.message == "Webhook failure already resolved"


def test_retry_unknown_failure(ingestor):
    """Retrying a failure that does not exist reports it."""
    result = ingestor.retry(9999)
    assert not result.success
    assert result.message == "Webhook failure not found"


def test_failed_retry_records_new_error(db: Session, ingestor, test_org):
    """A retry that fails again bumps retry_count and keeps the failure open."""
    raw_body = checkout_completed("evt_still_bad", test_org.id, "no-such-tenant", 100)
    with pytest.raises(WebhookProcessingError):
        deliver(ingestor, raw_body)

    failure_id = db.query(WebhookFailure).one().id
    result = ingestor.retry(failure_id)

    assert not result.success
    assert result.message.startswith("Retry failed: ")

    db.expire_all()
    failure = db.get(WebhookFailure, failure_id)
    assert failure.retry_count == 1
    assert failure.resolved_at is None
    assert [f.id for f in ingestor.list_failures()] == [failure_id]


def test_repeated_failing_delivery_increments_retry_count(db: Session, ingestor, test_org):
    """Raw re-deliveries of a failing event are re-processed, not deduplicated."""
    raw_body = checkout_completed("evt_repeat", test_org.id, "no-such-tenant", 100)

    for _ in range(3):
        with pytest.raises(WebhookProcessingError):
            deliver(ingestor, raw_body)

    db.expire_all()
    failure = db.query(WebhookFailure).one()
    assert failure.retry_count == 2
    assert db.query(WebhookEvent).count() == 0


def test_redelivery_after_fix_resolves_failure(db: Session, ingestor, test_org, test_tenant, test_charges):
    """A later successful delivery of a dead-lettered event resolves the failure."""
    raw_body = checkout_completed("evt_late_tenant", test_org.id, "tenant-added-later", 5000)
    with pytest.raises(WebhookProcessingError):
        deliver(ingestor, raw_body)

    db.add(Tenant(id="tenant-added-later", org_id=test_org.id, name="Late Renter"))
    db.commit()

    receipt = deliver(ingestor, raw_body)
    assert not receipt.duplicate

    db.expire_all()
    failure = db.query(WebhookFailure).one()
    assert failure.resolved_at is not None
    assert ingestor.list_failures() == []
    assert len(ingestor.list_failures(include_resolved=True)) == 1


def test_missing_org_dead_lettered(db: Session, ingestor):
    """Events without organization metadata fail and are dead-lettered."""
    raw_body = make_event(
        "evt_no_org",
        "checkout.session.completed",
        {"id": "cs_no_org", "amount_total": 100, "metadata": {}},
    )

    with pytest.raises(WebhookProcessingError) as exc_info:
        deliver(ingestor, raw_body)

    assert "Organization ID not found in webhook metadata" in str(exc_info.value)
    db.expire_all()
    assert db.query(WebhookFailure).count() == 1


def test_bad_signature_rejected_without_rows(db: Session, ingestor, test_org, test_tenant):
    """Deliveries with a wrong signature leave no trace."""
    raw_body = checkout_completed("evt_forged", test_org.id, test_tenant.id, 7500)

    with pytest.raises(WebhookValidationError):
        ingestor.receive(raw_body, sign_payload(raw_body, secret="whsec_wrong"))
    with pytest.raises(WebhookValidationError):
        ingestor.receive(raw_body, None)

    db.expire_all()
    assert db.query(WebhookEvent).count() == 0
    assert db.query(WebhookFailure).count() == 0
    assert db.query(Payment).count() == 0


def test_signature_covers_raw_bytes(ingestor, test_org, test_tenant):
    """Re-serialized JSON does not verify against the original signature."""
    raw_body = checkout_completed("evt_raw", test_org.id, test_tenant.id, 100)
    signature = sign_payload(raw_body)
    reserialized = json.dumps(json.loads(raw_body), indent=2).encode("utf-8")

    with pytest.raises(WebhookValidationError):
        ingestor.receive(reserialized, signature)


def test_stale_signature_rejected(ingestor, test_org, test_tenant):
    """Signatures older than the tolerance window are rejected."""
    raw_body = checkout_completed("evt_stale", test_org.id, test_tenant.id, 100)
    signature = sign_payload(raw_body, timestamp=int(time.time()) - 3600)

    with pytest.raises(WebhookValidationError):
        ingestor.receive(raw_body, signature)


def test_malformed_envelope_rejected(db: Session, ingestor):
    """Envelopes without id, type, data.object or an object id are rejected, not dead-lettered."""
    for raw_body in (
        b"not json",
        json.dumps({"type": "checkout.session.completed", "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_no_type", "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_no_data", "type": "checkout.session.completed"}).encode(),
        json.dumps({"id": "evt_no_obj_id", "type": "checkout.session.completed", "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_empty_obj_id", "type": "charge.dispute.created", "data": {"object": {"id": ""}}}).encode(),
        json.dumps({"id": "evt_int_obj_id", "type": "payment_intent.succeeded", "data": {"object": {"id": 42}}}).encode(),
    ):
        with pytest.raises(WebhookValidationError):
            deliver(ingestor, raw_body)

    db.expire_all()
    assert db.query(WebhookFailure).count() == 0
    assert db.query(WebhookEvent).count() == 0


def test_unhandled_event_type_acknowledged(db: Session, ingestor):
    """Unknown event types are stored and acknowledged."""
    raw_body = make_event("evt_other", "customer.created", {"id": "cus_1"})

    receipt = deliver(ingestor, raw_body)

    assert receipt.received and not receipt.duplicate
    db.expire_all()
    assert db.query(WebhookEvent).one().event_type == "customer.created"


def test_payment_failed_audited(db: Session, ingestor, test_org, test_tenant):
    """Failed payment attempts land on the payment's audit trail."""
    payment = Payment(
        org_id=test_org.id,
        tenant_id=test_tenant.id,
        provider="stripe",
        provider_payment_id="pi_declined",
        amount_cents=5000,
    )
    db.add(payment)
    db.commit()

    raw_body = make_event(
        "evt_failed_1",
        "payment_intent.payment_failed",
        {
            "id": "pi_declined",
            "metadata": {"orgId": test_org.id, "tenantId": test_tenant.id},
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        },
    )
    deliver(ingestor, raw_body)

    trail = AuditLedgerService(db).get_trail(test_org.id, "payment", payment.id)
    assert [e.action for e in trail] == ["payment_failed"]
    assert trail[0].metadata["failure_code"] == "card_declined"


def test_dispute_recorded_once(db: Session, ingestor, test_org):
    """Disputes are stored by provider id and audited."""
    dispute = {
        "id": "dp_1",
        "object": "dispute",
        "amount": 5000,
        "currency": "usd",
        "charge": "ch_1",
        "payment_intent": "pi_1",
        "reason": "fraudulent",
        "status": "needs_response",
        "evidence_details": {"due_by": 1735689600},
        "metadata": {"orgId": test_org.id},
    }
    deliver(ingestor, make_event("evt_dispute_1", "charge.dispute.created", dispute))
    # Same dispute under a new event id
    deliver(ingestor, make_event("evt_dispute_2", "charge.dispute.created", dispute))

    db.expire_all()
    stored = db.query(PaymentDispute).one()
    assert stored.reason == "fraudulent"
    assert stored.amount_cents == 5000
    assert stored.evidence_due_by is not None

    trail = AuditLedgerService(db).get_trail(test_org.id, "dispute", stored.id)
    assert [e.action for e in trail] == ["dispute_recorded"]


def test_insecure_mode_skips_signature(session_factory, test_settings, test_org):
    """Insecure test mode accepts unsigned deliveries."""
    settings = test_settings.model_copy(update={"allow_insecure_webhook_test": True})
    ingestor = WebhookIngestor(
        session_factory, build_handler_registry(DatabaseTenantDataProvider()), settings=settings
    )

    receipt = ingestor.receive(make_event("evt_unsigned", "customer.created", {"id": "cus_2"}), None)
    assert receipt.received


def test_non_utf8_body_rejected_in_insecure_mode(db: Session, session_factory, test_settings, test_org):
    """Bodies that are not UTF-8 are rejected even when signatures are skipped."""
    settings = test_settings.model_copy(update={"allow_insecure_webhook_test": True})
    ingestor = WebhookIngestor(
        session_factory, build_handler_registry(DatabaseTenantDataProvider()), settings=settings
    )
    raw_body = make_event("evt_utf16", "customer.created", {"id": "cus_3"}).decode("utf-8").encode("utf-16")

    with pytest.raises(WebhookValidationError, match="UTF-8"):
        ingestor.receive(raw_body, None)

    db.expire_all()
    assert db.query(WebhookEvent).count() == 0
    assert db.query(WebhookFailure).count() == 0


@pytest.mark.parametrize("intent_first", [False, True])
def test_checkout_and_intent_events_allocate_once(
    db: Session, ingestor, test_org, test_tenant, test_charges, intent_first
):
    """A checkout reported by both its session and its intent is paid once."""
    session_event = checkout_completed(
        "evt_both_session", test_org.id, test_tenant.id, 7500, payment_intent="pi_test_both"
    )
    intent_event = payment_intent_succeeded(
        "evt_both_intent", test_org.id, test_tenant.id, 7500, payment_intent="pi_test_both"
    )
    events = [intent_event, session_event] if intent_first else [session_event, intent_event]

    receipts = [deliver(ingestor, raw_body) for raw_body in events]

    assert not any(r.duplicate for r in receipts)
    db.expire_all()
    assert db.query(WebhookEvent).count() == 2
    payment = db.query(Payment).one()
    assert payment.provider_payment_id == "cs_test_0001"
    assert payment.provider_payment_intent_id == "pi_test_both"
    assert payment.status == PAYMENT_SUCCEEDED
    assert sum(a.amount_cents for a in db.query(Allocation).all()) == 7500

    trail = AuditLedgerService(db).get_trail(test_org.id, "payment", payment.id)
    assert [e.action for e in trail] == ["payment_received"]
    assert AuditLedgerService(db).verify_chain(test_org.id).valid


def test_intent_for_unknown_payment_ignored(db: Session, ingestor, test_org, test_tenant, test_charges):
    """An intent with no recorded payment creates nothing."""
    receipt = deliver(
        ingestor, payment_intent_succeeded("evt_intent_orphan", test_org.id, test_tenant.id, 7500)
    )

    assert receipt.received
    db.expire_all()
    assert db.query(Payment).count() == 0
    assert db.query(Allocation).count() == 0
    assert db.query(WebhookFailure).count() == 0


def test_intent_settles_payment_recorded_under_intent(db: Session, ingestor, test_org, test_tenant, test_charges):
    """A pending payment stored under its intent id is allocated by the intent event."""
    payment = Payment(
        org_id=test_org.id,
        tenant_id=test_tenant.id,
        provider="stripe",
        provider_payment_id="pi_test_direct",
        amount_cents=5000,
    )
    db.add(payment)
    db.commit()

    deliver(
        ingestor,
        payment_intent_succeeded(
            "evt_intent_direct", test_org.id, test_tenant.id, 5000, payment_intent="pi_test_direct"
        ),
    )

    db.expire_all()
    charge_a, _ = test_charges
    assert db.get(Payment, payment.id).status == PAYMENT_SUCCEEDED
    assert db.get(Charge, charge_a.id).status == CHARGE_PAID
    assert db.query(Allocation).count() == 1
