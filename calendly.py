"""
Calendly scheduling service: event cancellation and webhook signatures.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional, Union

import httpx

from errors import IntegrationError, ValidationError
from settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def is_configured() -> bool:
    return bool(settings.calendly_api_key)


def cancel_event(event_id: str, reason: str) -> None:
    url = f"{settings.calendly_api_url.rstrip('/')}/scheduled_events/{event_id}/cancellation"
    try:
        response = httpx.post(
            url,
            json={"reason": reason},
            headers={"Authorization": f"Bearer {settings.calendly_api_key}"},
            timeout=settings.http_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise IntegrationError(f"Calendly cancellation failed for {event_id}: {exc}")
    logger.info("Cancelled Calendly event %s", event_id)


def verify_webhook(payload: Union[bytes, str], signature: Optional[str]) -> None:
    """Check a Calendly-Webhook-Signature header (``t=<ts>,v1=<hex>``).

    Without a configured signing key webhooks are accepted unverified.
    """
    key = settings.calendly_webhook_signing_key
    if not key:
        logger.warning("Calendly webhook accepted without signature verification; no signing key configured")
        return
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    parts = dict(p.split("=", 1) for p in (signature or "").split(",") if "=" in p)
    timestamp, expected = parts.get("t"), parts.get("v1")
    if not timestamp or not expected:
        raise ValidationError("Missing Calendly webhook signature")
    try:
        age = time.time() - int(timestamp)
    except ValueError:
        raise ValidationError("Invalid Calendly webhook signature")
    if abs(age) > SIGNATURE_TOLERANCE_SECONDS:
        raise ValidationError("Calendly webhook signature has expired")
    digest = hmac.new(key.encode(), timestamp.encode() + b"." + payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, expected):
        raise ValidationError("Invalid Calendly webhook signature")
