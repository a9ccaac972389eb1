"""
Stripe gateway calls used by the order workflow.
"""
import json
import logging
from typing import Any, Dict, Optional, Union

import stripe

from errors import IntegrationError, ValidationError
from settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def create_payment_intent(amount: float, metadata: Dict[str, str], currency: Optional[str] = None) -> Dict[str, str]:
    """Create a payment intent for ``amount`` in major units.

    Returns ``{"id", "client_secret"}``. Gateway failures raise IntegrationError.
    """
    if not settings.stripe_secret_key:
        raise IntegrationError("Payment gateway is not configured")
    stripe.max_network_retries = settings.stripe_max_network_retries
    try:
        intent = stripe.PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=currency or settings.stripe_currency,
            metadata=metadata,
            api_key=settings.stripe_secret_key,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe payment intent creation failed: %s", exc)
        raise IntegrationError("Payment gateway request failed")
    return {"id": intent["id"], "client_secret": intent["client_secret"]}


def parse_webhook_event(payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
    """Verify a Stripe-Signature header against the raw body and return the event."""
    if not signature or not settings.stripe_webhook_secret:
        raise ValidationError("Webhook Error: missing signature")
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Webhook Error: invalid payload")
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature, settings.stripe_webhook_secret, SIGNATURE_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise ValidationError(f"Webhook Error: {exc}")
    try:
        return json.loads(payload)
    except ValueError:
        raise ValidationError("Webhook Error: invalid payload")
