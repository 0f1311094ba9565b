import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status as http_status

from jobboard_api.core.config import Settings, get_settings
from jobboard_api.core.webhooks import WebhookNotConfiguredError, WebhookVerificationError, verify_webhook_event
from jobboard_api.schemas.billing import WebhookAck
from jobboard_api.services.billing_events import BillingEventPayloadError, BillingEventProcessor
from jobboard_api.services.billing_provider import BillingProviderError, get_billing_provider
from jobboard_api.services.repository import RepositoryError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookAck)
async def receive_billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    provider=Depends(get_billing_provider),
) -> WebhookAck:
    payload = await request.body()
    try:
        event = verify_webhook_event(
            payload,
            stripe_signature,
            secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
    except WebhookNotConfiguredError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="webhook not configured") from exc
    except WebhookVerificationError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    processor = BillingEventProcessor(repository=repository, provider=provider)
    try:
        outcome = await processor.handle_delivery(event)
    except BillingEventPayloadError as exc:
        logger.warning("billing webhook rejected event_id=%s reason=%s", event.id, exc)
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (RepositoryError, BillingProviderError) as exc:
        logger.exception("billing webhook processing failed event_id=%s type=%s", event.id, event.type)
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="webhook processing failed",
        ) from exc

    logger.info("billing webhook handled event_id=%s type=%s outcome=%s", event.id, event.type, outcome.value)
    return WebhookAck()
