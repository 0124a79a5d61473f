"""Inbound webhook ingestion with deduplication and dead-lettering."""

import logging
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from propledger_api.db.session import run_in_transaction
from propledger_api.exceptions import WebhookProcessingError, WebhookValidationError
from propledger_api.models import WebhookEvent, WebhookFailure
from propledger_api.settings import Settings, get_settings
from propledger_api.utils.metrics import webhook_events_received, webhook_processing_duration, webhook_retries
from propledger_api.webhooks.handlers import Handler
from propledger_api.webhooks.signature import decode_body, parse_envelope, verify_signature

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass
class WebhookReceipt:
    """Acknowledgement returned to the provider."""

    received: bool = True
    duplicate: bool = False


@dataclass
class RetryResult:
    """Outcome of an operator-triggered retry."""

    success: bool
    message: str


class WebhookIngestor:
    """Receives provider events and runs each distinct event exactly once.

    The envelope row, the handler's writes and their audit events share one
    transaction. A handler failure rolls all of it back and leaves a
    ``webhook_failures`` row behind for retry. Retries are never scheduled
    automatically; an operator calls ``retry``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handlers: dict[str, Handler],
        provider: str = "stripe",
        settings: Optional[Settings] = None,
    ):
        """Initialize ingestor."""
        self.session_factory = session_factory
        self.handlers = handlers
        self.provider = provider
        self.settings = settings or get_settings()

    def receive(self, raw_body: bytes, signature: Optional[str]) -> WebhookReceipt:
        """Verify, deduplicate and process one delivery."""
        try:
            payload = decode_body(raw_body)
            verify_signature(payload, signature, self.settings)
            event = parse_envelope(payload)
        except WebhookValidationError:
            webhook_events_received.labels(provider=self.provider, outcome="rejected").inc()
            raise

        logger.info(
            f"Processing webhook: {event['type']} ({event['id']})",
            extra={"provider": self.provider, "event_id": event["id"]},
        )

        with webhook_processing_duration.labels(provider=self.provider).time():
            try:
                processed = self._process(event, payload)
            except Exception as e:
                failure_id = self._dead_letter(event["id"], payload, e)
                webhook_events_received.labels(provider=self.provider, outcome="failed").inc()
                raise WebhookProcessingError(
                    f"Webhook error: {e}", self.provider, event["id"], failure_id
                ) from e

        if not processed:
            webhook_events_received.labels(provider=self.provider, outcome="duplicate").inc()
            logger.info(f"Duplicate webhook ignored: {event['id']}")
            return WebhookReceipt(duplicate=True)

        webhook_events_received.labels(provider=self.provider, outcome="processed").inc()
        return WebhookReceipt()

    def _process(self, event: dict, payload: str, retried: bool = False) -> bool:
        """Store the envelope and run its handler; False if already stored."""

        def work(db: Session) -> bool:
            db.add(
                WebhookEvent(
                    provider=self.provider,
                    event_id=event["id"],
                    event_type=event["type"],
                    payload=payload,
                )
            )
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                self._settle_failure(db, event["id"], retried)
                return False

            handler = self.handlers.get(event["type"])
            if handler is None:
                logger.info(f"Unhandled webhook event type: {event['type']}")
            else:
                handler(db, event)

            self._settle_failure(db, event["id"], retried)
            return True

        return run_in_transaction(self.session_factory, work)

    def _settle_failure(self, db: Session, event_id: str, retried: bool) -> None:
        """Mark an open failure for this event as resolved."""
        failure = (
            db.query(WebhookFailure)
            .filter(WebhookFailure.provider == self.provider, WebhookFailure.event_id == event_id)
            .first()
        )
        if failure is None or failure.resolved_at is not None:
            return

        now = datetime.utcnow()
        failure.resolved_at = now
        if retried:
            failure.retry_count += 1
            failure.last_retry_at = now
        logger.info(f"Webhook failure {failure.id} resolved for event {event_id}")

    def _dead_letter(self, event_id: str, payload: str, error: Exception) -> Optional[int]:
        """Insert or bump the failure row for an event; returns its id."""
        message = str(error)[:MAX_ERROR_LENGTH] or error.__class__.__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        def work(db: Session) -> int:
            failure = (
                db.query(WebhookFailure)
                .filter(WebhookFailure.provider == self.provider, WebhookFailure.event_id == event_id)
                .with_for_update()
                .first()
            )
            if failure is None:
                failure = WebhookFailure(
                    provider=self.provider,
                    event_id=event_id,
                    payload=payload,
                    error_message=message,
                    error_stack=stack,
                    retry_count=0,
                )
                db.add(failure)
            else:
                failure.error_message = message
                failure.error_stack = stack
                failure.retry_count += 1
                failure.last_retry_at = datetime.utcnow()
                failure.resolved_at = None
            db.flush()
            return failure.id

        logger.error(
            f"Webhook processing failed: {message}",
            extra={"provider": self.provider, "event_id": event_id},
        )
        try:
            try:
                failure_id = run_in_transaction(self.session_factory, work)
            except IntegrityError:
                # Lost an insert race with a concurrent delivery; the row exists now.
                failure_id = run_in_transaction(self.session_factory, work)
        except Exception as dead_letter_error:
            logger.error(
                f"Failed to record webhook failure for {event_id}: {dead_letter_error}",
                exc_info=True,
            )
            return None

        logger.info(f"Webhook failure recorded for retry: {event_id} ({failure_id})")
        return failure_id

    def retry(self, failure_id: int) -> RetryResult:
        """Re-run a dead-lettered event through the normal processing path."""
        db = self.session_factory()
        try:
            failure = db.get(WebhookFailure, failure_id)
            if failure is None:
                return RetryResult(success=False, message="Webhook failure not found")
            if failure.resolved_at is not None:
                return RetryResult(success=False, message="Webhook failure already resolved")
            event_id, payload = failure.event_id, failure.payload
        finally:
            db.close()

        try:
            event = parse_envelope(payload)
            if event["id"] != event_id:
                raise WebhookValidationError(
                    f"Stored payload id {event['id']} does not match failure event {event_id}"
                )
            self._process(event, payload, retried=True)
        except Exception as e:
            self._dead_letter(event_id, payload, e)
            webhook_retries.labels(result="failed").inc()
            logger.error(f"Webhook retry failed for {failure_id}: {e}")
            return RetryResult(success=False, message=f"Retry failed: {e}")

        webhook_retries.labels(result="succeeded").inc()
        logger.info(f"Successfully retried webhook failure {failure_id} for event {event_id}")
        return RetryResult(success=True, message="Webhook retried successfully")

    def list_failures(self, include_resolved: bool = False, limit: int = 100) -> list[WebhookFailure]:
        """List dead-lettered events, newest first."""
        db = self.session_factory()
        try:
            query = db.query(WebhookFailure).filter(WebhookFailure.provider == self.provider)
            if not include_resolved:
                query = query.filter(WebhookFailure.resolved_at.is_(None))
            return query.order_by(WebhookFailure.created_at.desc(), WebhookFailure.id.desc()).limit(limit).all()
        finally:
            db.close()
