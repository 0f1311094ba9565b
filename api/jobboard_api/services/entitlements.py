from __future__ import annotations

from dataclasses import dataclass

from jobboard_api.services.repository import SubscriptionRecord

ENTITLED_STATUSES = frozenset({"active", "trialing"})


@dataclass(slots=True)
class Entitlement:
    account_id: str
    is_active: bool
    plan_id: str | None
    subscription: SubscriptionRecord | None


def is_entitled_status(status: str | None) -> bool:
    return status in ENTITLED_STATUSES


async def get_entitlement(repository, account_id: str) -> Entitlement:
    # No row means free tier. Store errors propagate.
    subscription = await repository.get_subscription(account_id=account_id)
    if subscription is None:
        return Entitlement(account_id=account_id, is_active=False, plan_id=None, subscription=None)
    return Entitlement(
        account_id=account_id,
        is_active=is_entitled_status(subscription.status),
        plan_id=subscription.plan_id,
        subscription=subscription,
    )


async def has_active_subscription(repository, account_id: str) -> bool:
    entitlement = await get_entitlement(repository, account_id)
    return entitlement.is_active
