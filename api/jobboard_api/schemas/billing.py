from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

SubscriptionStatus = Literal[
    "active",
    "trialing",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
]


def _expandable_id(value: Any) -> Any:
    # Stripe returns either the id string or the expanded object.
    if isinstance(value, dict):
        return value.get("id")
    return value


class BillingEventData(BaseModel):
    object: dict[str, Any]


class BillingEvent(BaseModel):
    id: str
    type: str
    created: int
    livemode: bool = False
    data: BillingEventData

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class PriceRef(BaseModel):
    id: str


class SubscriptionItem(BaseModel):
    price: PriceRef | None = None
    current_period_end: int | None = None


class SubscriptionItemList(BaseModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionResource(BaseModel):
    """The subset of a Stripe subscription object the reconciler reads."""

    id: str
    customer: str
    status: str
    metadata: dict[str, str] = Field(default_factory=dict)
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)

    @field_validator("customer", mode="before")
    @classmethod
    def normalize_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def plan_id(self) -> str | None:
        item = self.first_item
        if item is None or item.price is None:
            return None
        return item.price.id

    @property
    def current_period_end(self) -> datetime | None:
        item = self.first_item
        if item is None or item.current_period_end is None:
            return None
        return datetime.fromtimestamp(item.current_period_end, tz=timezone.utc)


class CheckoutSessionResource(BaseModel):
    id: str
    mode: str
    customer: str | None = None
    subscription: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def normalize_expandable(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}


class WebhookAck(BaseModel):
    received: bool = True


class SubscriptionOut(BaseModel):
    account_id: str
    provider_subscription_id: str
    provider_customer_id: str
    plan_id: str | None = None
    status: str
    current_period_end: datetime | None = None
    updated_at: datetime


class EntitlementOut(BaseModel):
    account_id: str
    is_active: bool
    plan_id: str | None = None
    subscription: SubscriptionOut | None = None


class CheckoutRequest(BaseModel):
    plan: Literal["pro", "premium"] = "pro"


class RedirectOut(BaseModel):
    url: str


class DeferredReplayOut(BaseModel):
    claimed: int = 0
    reconciled: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
