"""Payment provider signature verification and envelope parsing."""

import json
import logging
from typing import Any, Optional

import stripe

from propledger_api.exceptions import WebhookValidationError
from propledger_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def verify_signature(payload: str, signature: Optional[str], settings: Optional[Settings] = None) -> None:
    """Verify the Stripe-Signature header against the request body.

    ``payload`` is the raw body decoded as UTF-8, unchanged otherwise.
    Raises WebhookValidationError when the signature is missing, stale or
    wrong. Verification is skipped only when insecure test mode is on.
    """
    settings = settings or get_settings()

    if settings.allow_insecure_webhook_test:
        logger.warning("Webhook signature validation skipped (ALLOW_INSECURE_WEBHOOK_TEST=true)")
        return

    if not signature:
        raise WebhookValidationError("Missing Stripe signature")
    if not settings.stripe_webhook_secret:
        raise WebhookValidationError("Webhook secret is not configured")

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            signature,
            settings.stripe_webhook_secret,
            settings.webhook_signature_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise WebhookValidationError(f"Invalid webhook signature: {e}") from e


def decode_body(raw_body: bytes) -> str:
    """Decode a webhook body; provider events are always UTF-8 JSON."""
    try:
        return raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookValidationError("Webhook body is not valid UTF-8") from e


def parse_envelope(payload: str) -> dict[str, Any]:
    """Parse and shape-check a provider event envelope."""
    try:
        event = json.loads(payload)
    except (ValueError, TypeError) as e:
        raise WebhookValidationError(f"Invalid JSON payload: {e}") from e

    if not isinstance(event, dict):
        raise WebhookValidationError("Webhook payload must be a JSON object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise WebhookValidationError("Webhook event is missing an id")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise WebhookValidationError("Webhook event is missing a type")

    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise WebhookValidationError("Webhook event is missing data.object")

    object_id = data["object"].get("id")
    if not isinstance(object_id, str) or not object_id:
        raise WebhookValidationError("Webhook event data.object is missing an id")
    return event
