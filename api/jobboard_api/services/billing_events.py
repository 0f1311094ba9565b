from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from jobboard_api.schemas.billing import BillingEvent, CheckoutSessionResource, SubscriptionResource
from jobboard_api.services.billing_provider import BillingProviderError
from jobboard_api.services.identity import IdentityResolver
from jobboard_api.services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

HANDLED_EVENT_TYPES = frozenset(
    {
        CHECKOUT_COMPLETED,
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
    }
)

ResourceT = TypeVar("ResourceT", bound=BaseModel)


class BillingEventPayloadError(ValueError):
    """Raised when a verified event carries an unusable resource object."""


class BillingEventOutcome(str, Enum):
    IGNORED = "ignored"
    RECONCILED = "reconciled"
    STALE = "stale"
    CANCELED = "canceled"
    UNRESOLVED = "unresolved"
    DEFERRED = "deferred"


@dataclass(slots=True)
class ReplaySummary:
    claimed: int = 0
    reconciled: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0


def is_handled_event(event_type: str) -> bool:
    return event_type in HANDLED_EVENT_TYPES


class BillingEventProcessor:
    def __init__(self, *, repository, provider) -> None:
        self._repository = repository
        self._provider = provider
        self._resolver = IdentityResolver(repository)
        self._reconciler = SubscriptionReconciler(repository)

    async def handle_delivery(self, event: BillingEvent) -> BillingEventOutcome:
        """Process a freshly delivered event, deferring it when no account resolves."""
        outcome = await self.process(event)
        if outcome is not BillingEventOutcome.UNRESOLVED:
            return outcome

        inserted = await self._repository.defer_billing_event(
            event_id=event.id,
            event_type=event.type,
            payload=event.model_dump(mode="json"),
            reason="account_unresolved",
        )
        logger.warning(
            "billing event deferred event_id=%s type=%s reason=account_unresolved first_delivery=%s",
            event.id,
            event.type,
            inserted,
        )
        return BillingEventOutcome.DEFERRED

    async def process(self, event: BillingEvent) -> BillingEventOutcome:
        if not is_handled_event(event.type):
            logger.debug("billing event ignored event_id=%s type=%s", event.id, event.type)
            return BillingEventOutcome.IGNORED

        if event.type == CHECKOUT_COMPLETED:
            return await self._handle_checkout_completed(event)
        if event.type == SUBSCRIPTION_DELETED:
            return await self._handle_subscription_deleted(event)
        return await self._handle_subscription_changed(event)

    async def replay_deferred(self, *, limit: int, lease_seconds: int) -> ReplaySummary:
        summary = ReplaySummary()
        records = await self._repository.claim_deferred_billing_events(limit=limit, lease_seconds=lease_seconds)
        summary.claimed = len(records)

        for record in records:
            try:
                event = BillingEvent.model_validate(record.payload)
                outcome = await self.process(event)
            except (ValidationError, BillingEventPayloadError, BillingProviderError) as exc:
                error = f"{type(exc).__name__}: {exc}"
            else:
                if outcome is not BillingEventOutcome.UNRESOLVED:
                    await self._repository.complete_deferred_billing_event(
                        event_id=record.event_id,
                        outcome=outcome.value,
                    )
                    summary.reconciled += 1
                    logger.info(
                        "deferred billing event replayed event_id=%s outcome=%s attempts=%s",
                        record.event_id,
                        outcome.value,
                        record.attempts,
                    )
                    continue
                error = "account_unresolved"

            status = await self._repository.reschedule_deferred_billing_event(
                event_id=record.event_id,
                attempts=record.attempts,
                error=error,
            )
            if status == "dead_letter":
                summary.dead_lettered += 1
                logger.error(
                    "deferred billing event dead-lettered event_id=%s attempts=%s error=%s",
                    record.event_id,
                    record.attempts,
                    error,
                )
            else:
                summary.rescheduled += 1
                logger.info(
                    "deferred billing event rescheduled event_id=%s attempts=%s error=%s",
                    record.event_id,
                    record.attempts,
                    error,
                )

        return summary

    async def _handle_checkout_completed(self, event: BillingEvent) -> BillingEventOutcome:
        session = self._parse_resource(event, CheckoutSessionResource)
        if session.mode != "subscription":
            logger.info("checkout session ignored event_id=%s mode=%s", event.id, session.mode)
            return BillingEventOutcome.IGNORED
        if not session.subscription:
            raise BillingEventPayloadError(f"checkout session {session.id} has no subscription")

        account_id = await self._resolver.resolve(metadata=session.metadata, provider_customer_id=session.customer)
        if not account_id:
            return BillingEventOutcome.UNRESOLVED

        subscription = await self._provider.fetch_subscription(session.subscription)
        applied = await self._reconciler.apply(
            account_id=account_id,
            subscription=subscription,
            event_at=event.created_at,
        )
        return BillingEventOutcome.RECONCILED if applied else BillingEventOutcome.STALE

    async def _handle_subscription_changed(self, event: BillingEvent) -> BillingEventOutcome:
        subscription = self._parse_resource(event, SubscriptionResource)
        account_id = await self._resolver.resolve(
            metadata=subscription.metadata,
            provider_customer_id=subscription.customer,
        )
        if not account_id:
            return BillingEventOutcome.UNRESOLVED

        applied = await self._reconciler.apply(
            account_id=account_id,
            subscription=subscription,
            event_at=event.created_at,
        )
        return BillingEventOutcome.RECONCILED if applied else BillingEventOutcome.STALE

    async def _handle_subscription_deleted(self, event: BillingEvent) -> BillingEventOutcome:
        subscription_id = event.data.object.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise BillingEventPayloadError(f"event {event.id} has no subscription id")

        record = await self._reconciler.cancel(provider_subscription_id=subscription_id, event_at=event.created_at)
        return BillingEventOutcome.CANCELED if record is not None else BillingEventOutcome.IGNORED

    @staticmethod
    def _parse_resource(event: BillingEvent, model: type[ResourceT]) -> ResourceT:
        try:
            return model.model_validate(event.data.object)
        except ValidationError as exc:
            raise BillingEventPayloadError(f"event {event.id} carries a malformed {event.type} object") from exc
