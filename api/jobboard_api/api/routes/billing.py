import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from jobboard_api.core.config import Settings, get_settings
from jobboard_api.core.security import (
    get_human_principal,
    get_machine_principal,
    require_machine_scopes,
    require_principal_scopes,
)
from jobboard_api.schemas.billing import (
    CheckoutRequest,
    DeferredReplayOut,
    EntitlementOut,
    RedirectOut,
    SubscriptionOut,
)
from jobboard_api.services.billing_events import BillingEventProcessor
from jobboard_api.services.billing_provider import (
    BillingProviderError,
    BillingProviderNotConfiguredError,
    get_billing_provider,
)
from jobboard_api.services.entitlements import get_entitlement
from jobboard_api.services.plans import get_plans
from jobboard_api.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/plans")
async def list_plans(settings: Settings = Depends(get_settings)) -> list[dict[str, object]]:
    return [
        {
            "key": plan.key,
            "name": plan.name,
            "description": plan.description,
            "features": list(plan.features),
            "purchasable": plan.purchasable,
        }
        for plan in get_plans(settings).values()
    ]


@router.get("/subscription", response_model=EntitlementOut)
async def get_subscription_status(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EntitlementOut:
    account_id = require_principal_scopes(principal, {"billing:read"})
    try:
        entitlement = await get_entitlement(repository, account_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    subscription = entitlement.subscription
    return EntitlementOut(
        account_id=account_id,
        is_active=entitlement.is_active,
        plan_id=entitlement.plan_id,
        subscription=(
            SubscriptionOut(
                account_id=subscription.account_id,
                provider_subscription_id=subscription.provider_subscription_id,
                provider_customer_id=subscription.provider_customer_id,
                plan_id=subscription.plan_id,
                status=subscription.status,
                current_period_end=subscription.current_period_end,
                updated_at=subscription.updated_at,
            )
            if subscription is not None
            else None
        ),
    )


@router.post("/checkout", response_model=RedirectOut)
async def create_checkout(
    payload: CheckoutRequest | None = None,
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    provider=Depends(get_billing_provider),
) -> RedirectOut:
    account_id = require_principal_scopes(principal, {"billing:write"})
    plan = get_plans(settings)[(payload or CheckoutRequest()).plan]
    if not plan.purchasable:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"plan {plan.key} has no price_ id configured",
        )

    app_url = settings.app_url.rstrip("/")
    try:
        customer_id = await repository.get_provider_customer_id(account_id=account_id)
        if not customer_id:
            customer_id = await provider.create_customer(account_id=account_id, email=None)
            await repository.link_provider_customer(account_id=account_id, provider_customer_id=customer_id)
            logger.info("billing customer linked account_id=%s customer_id=%s", account_id, customer_id)

        url = await provider.create_checkout_session(
            customer_id=customer_id,
            price_id=str(plan.price_id),
            account_id=account_id,
            success_url=f"{app_url}/employer/billing?success=1",
            cancel_url=f"{app_url}/employer/billing?canceled=1",
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BillingProviderNotConfiguredError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return RedirectOut(url=url)


@router.post("/portal", response_model=RedirectOut)
async def create_portal(
    principal=Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    provider=Depends(get_billing_provider),
) -> RedirectOut:
    account_id = require_principal_scopes(principal, {"billing:write"})
    try:
        customer_id = await repository.get_provider_customer_id(account_id=account_id)
        if not customer_id:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail="no billing account found; subscribe first",
            )
        url = await provider.create_billing_portal_session(
            customer_id=customer_id,
            return_url=f"{settings.app_url.rstrip('/')}/employer/billing",
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except BillingProviderNotConfiguredError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return RedirectOut(url=url)


@router.post("/deferred-events/replay", response_model=DeferredReplayOut)
async def replay_deferred_events(
    limit: int = Query(default=50, ge=1, le=500),
    principal=Depends(get_machine_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    provider=Depends(get_billing_provider),
) -> DeferredReplayOut:
    require_machine_scopes(principal, {"billing:replay"})

    processor = BillingEventProcessor(repository=repository, provider=provider)
    try:
        summary = await processor.replay_deferred(
            limit=limit,
            lease_seconds=settings.deferred_event_lease_seconds,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeferredReplayOut(
        claimed=summary.claimed,
        reconciled=summary.reconciled,
        rescheduled=summary.rescheduled,
        dead_lettered=summary.dead_lettered,
    )
