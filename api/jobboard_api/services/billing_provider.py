from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import stripe
from pydantic import ValidationError

from jobboard_api.core.config import get_settings
from jobboard_api.schemas.billing import SubscriptionResource

logger = logging.getLogger(__name__)

PLACEHOLDER_SECRET_KEYS = {"sk_...", "sk_test_...", "sk_live_...", "changeme"}


class BillingProviderError(Exception):
    """Base error for billing provider calls."""


class BillingProviderNotConfiguredError(BillingProviderError):
    """Raised when provider credentials are missing or placeholders."""


class BillingProviderUnavailableError(BillingProviderError):
    """Raised when the provider cannot be reached or answers unexpectedly."""


def provider_credentials_configured(secret_key: str | None) -> bool:
    if not secret_key or not secret_key.strip():
        return False
    candidate = secret_key.strip()
    return candidate not in PLACEHOLDER_SECRET_KEYS and not candidate.endswith("...")


class StripeBillingProvider:
    """Async wrapper over ``stripe.StripeClient`` for the calls the app makes.

    One instance (and one pooled HTTPX transport) is shared per process; the
    app lifespan closes it. Every ``stripe.StripeError`` surfaces as
    ``BillingProviderUnavailableError``.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        api_base: str = "https://api.stripe.com",
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
        http_client: stripe.HTTPClient | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_network_retries = max_network_retries
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._client: stripe.StripeClient | None = None

    async def close(self) -> None:
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.close_async()
            self._http_client = None
        self._client = None

    async def fetch_subscription(self, subscription_id: str) -> SubscriptionResource:
        client = self._get_client()
        try:
            subscription = await client.v1.subscriptions.retrieve_async(subscription_id)
        except stripe.StripeError as exc:
            raise self._unavailable("subscriptions.retrieve", exc) from exc
        try:
            return SubscriptionResource.model_validate(subscription.to_dict())
        except ValidationError as exc:
            raise BillingProviderUnavailableError(f"unexpected subscription payload for {subscription_id}") from exc

    async def create_customer(self, *, account_id: str, email: str | None) -> str:
        params: dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            params["email"] = email
        client = self._get_client()
        try:
            customer = await client.v1.customers.create_async(params)
        except stripe.StripeError as exc:
            raise self._unavailable("customers.create", exc) from exc
        return self._require_str(customer.to_dict(), "id")

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        account_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {"account_id": account_id},
            "subscription_data": {"metadata": {"account_id": account_id}},
            "allow_promotion_codes": True,
        }
        client = self._get_client()
        try:
            session = await client.v1.checkout.sessions.create_async(params)
        except stripe.StripeError as exc:
            raise self._unavailable("checkout.sessions.create", exc) from exc
        return self._require_str(session.to_dict(), "url")

    async def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> str:
        client = self._get_client()
        try:
            session = await client.v1.billing_portal.sessions.create_async(
                {"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as exc:
            raise self._unavailable("billing_portal.sessions.create", exc) from exc
        return self._require_str(session.to_dict(), "url")

    def _get_client(self) -> stripe.StripeClient:
        if not provider_credentials_configured(self.secret_key):
            raise BillingProviderNotConfiguredError("JB_STRIPE_SECRET_KEY is not configured")

        if self._client is None:
            if self._http_client is None:
                self._http_client = stripe.HTTPXClient(timeout=self.timeout_seconds)
            self._client = stripe.StripeClient(
                str(self.secret_key).strip(),
                base_addresses={"api": self.api_base},
                max_network_retries=self.max_network_retries,
                http_client=self._http_client,
            )
        return self._client

    @staticmethod
    def _unavailable(operation: str, exc: stripe.StripeError) -> BillingProviderUnavailableError:
        logger.warning(
            "stripe request failed operation=%s status=%s error=%s",
            operation,
            exc.http_status,
            type(exc).__name__,
        )
        if exc.http_status:
            return BillingProviderUnavailableError(f"billing provider returned {exc.http_status}")
        return BillingProviderUnavailableError("billing provider unreachable")

    @staticmethod
    def _require_str(payload: dict[str, Any], key: str) -> str:
        value = payload.get(key)
        if not isinstance(value, str) or not value:
            raise BillingProviderUnavailableError(f"billing provider response missing {key}")
        return value


@lru_cache
def get_billing_provider() -> StripeBillingProvider:
    settings = get_settings()
    return StripeBillingProvider(
        secret_key=settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )
