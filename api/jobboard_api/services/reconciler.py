from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from jobboard_api.schemas.billing import SubscriptionResource
from jobboard_api.services.repository import SubscriptionRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionReconciler:
    """Sole writer of the per-account subscription record."""

    def __init__(self, repository, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._repository = repository
        self._clock = clock

    async def apply(
        self,
        *,
        account_id: str,
        subscription: SubscriptionResource,
        event_at: datetime | None,
    ) -> bool:
        record = SubscriptionRecord(
            account_id=account_id,
            provider_subscription_id=subscription.id,
            provider_customer_id=subscription.customer,
            plan_id=subscription.plan_id,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
            updated_at=self._clock(),
            provider_event_at=event_at,
        )
        applied = await self._repository.upsert_subscription(record)
        if applied:
            logger.info(
                "subscription reconciled account_id=%s subscription_id=%s status=%s plan_id=%s",
                account_id,
                subscription.id,
                subscription.status,
                subscription.plan_id,
            )
        else:
            logger.warning(
                "stale subscription event skipped account_id=%s subscription_id=%s event_at=%s",
                account_id,
                subscription.id,
                event_at.isoformat() if event_at else None,
            )
        return applied

    async def cancel(self, *, provider_subscription_id: str, event_at: datetime | None) -> SubscriptionRecord | None:
        record = await self._repository.cancel_subscription(
            provider_subscription_id=provider_subscription_id,
            provider_event_at=event_at,
            updated_at=self._clock(),
        )
        if record is None:
            logger.warning(
                "subscription cancel matched no current row subscription_id=%s",
                provider_subscription_id,
            )
        else:
            logger.info(
                "subscription canceled account_id=%s subscription_id=%s",
                record.account_id,
                provider_subscription_id,
            )
        return record
