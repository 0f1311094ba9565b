"""Stripe webhook signature verification.

The raw request body must reach :func:`verify_webhook_event` byte-for-byte;
any re-serialization breaks the HMAC.
"""

from __future__ import annotations

import logging

import stripe
from pydantic import ValidationError

from jobboard_api.schemas.billing import BillingEvent

logger = logging.getLogger(__name__)

PLACEHOLDER_WEBHOOK_SECRETS = {"whsec_...", "whsec_placeholder", "whsec_xxx", "changeme"}


class WebhookNotConfiguredError(Exception):
    """Raised when no usable signing secret is configured."""


class WebhookVerificationError(Exception):
    """Raised when a payload cannot be authenticated or parsed."""


def webhook_secret_configured(secret: str | None) -> bool:
    if secret is None:
        return False
    candidate = secret.strip()
    if not candidate:
        return False
    return candidate not in PLACEHOLDER_WEBHOOK_SECRETS and not candidate.endswith("...")


def verify_webhook_event(
    payload: bytes,
    signature_header: str | None,
    *,
    secret: str | None,
    tolerance_seconds: int = 300,
) -> BillingEvent:
    signing_secret = (secret or "").strip()
    if not webhook_secret_configured(signing_secret):
        logger.error("billing webhook rejected reason=secret_not_configured")
        raise WebhookNotConfiguredError("webhook signing secret is not configured")

    if not signature_header:
        logger.warning("billing webhook rejected reason=missing_signature_header")
        raise WebhookVerificationError("missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("billing webhook rejected reason=body_not_utf8")
        raise WebhookVerificationError("payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature_header, signing_secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        logger.warning("billing webhook rejected reason=signature_mismatch detail=%s", exc)
        raise WebhookVerificationError("invalid signature") from exc

    try:
        event = BillingEvent.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("billing webhook rejected reason=malformed_event errors=%s", exc.error_count())
        raise WebhookVerificationError("malformed event payload") from exc

    logger.info("billing webhook verified event_id=%s type=%s", event.id, event.type)
    return event
