from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest
import stripe

from jobboard_api.services.billing_provider import (
    BillingProviderNotConfiguredError,
    BillingProviderUnavailableError,
    StripeBillingProvider,
    provider_credentials_configured,
)


class MockTransportHTTPXClient(stripe.HTTPXClient):
    """Stripe's HTTPX client with its async session routed to a mock transport."""

    def __init__(self, handler) -> None:
        super().__init__(timeout=5)
        self._client_async = httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _provider(handler, *, secret_key: str | None = "sk_test_123") -> StripeBillingProvider:
    return StripeBillingProvider(
        secret_key=secret_key,
        api_base="https://stripe.test",
        max_network_retries=0,
        http_client=MockTransportHTTPXClient(handler),
    )


def _call(provider: StripeBillingProvider, method: str, *args, **kwargs):
    async def run():
        try:
            return await getattr(provider, method)(*args, **kwargs)
        finally:
            await provider.close()
            if provider._http_client is not None:
                await provider._http_client.close_async()

    return asyncio.run(run())


def test_fetch_subscription_parses_expanded_customer(billing_helpers) -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        payload = billing_helpers.subscription()
        payload["customer"] = {"id": "cus_1", "object": "customer"}
        return httpx.Response(200, json=payload)

    subscription = _call(_provider(handler), "fetch_subscription", "sub_1")

    assert seen["method"] == "GET"
    assert seen["url"] == "https://stripe.test/v1/subscriptions/sub_1"
    assert seen["auth"] == "Bearer sk_test_123"
    assert subscription.customer == "cus_1"
    assert subscription.plan_id == "price_pro"


def test_checkout_session_carries_account_metadata() -> None:
    captured: dict[str, list[str]] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = [request.url.path]
        captured.update(parse_qs(request.content.decode("utf-8")))
        return httpx.Response(200, json={"id": "cs_1", "object": "checkout.session", "url": "https://checkout.stripe.test/cs_1"})

    url = _call(
        _provider(handler),
        "create_checkout_session",
        customer_id="cus_1",
        price_id="price_pro",
        account_id="acct-1",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )

    assert url == "https://checkout.stripe.test/cs_1"
    assert captured["path"] == ["/v1/checkout/sessions"]
    assert captured["mode"] == ["subscription"]
    assert captured["metadata[account_id]"] == ["acct-1"]
    assert captured["subscription_data[metadata][account_id]"] == ["acct-1"]
    assert captured["line_items[0][price]"] == ["price_pro"]
    assert captured["line_items[0][quantity]"] == ["1"]


def test_customer_is_created_with_account_metadata() -> None:
    captured: dict[str, list[str]] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(parse_qs(request.content.decode("utf-8")))
        return httpx.Response(200, json={"id": "cus_new", "object": "customer"})

    customer_id = _call(_provider(handler), "create_customer", account_id="acct-1", email="owner@example.com")

    assert customer_id == "cus_new"
    assert captured["metadata[account_id]"] == ["acct-1"]
    assert captured["email"] == ["owner@example.com"]


def test_portal_session_returns_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/billing_portal/sessions"
        return httpx.Response(
            200,
            json={"id": "bps_1", "object": "billing_portal.session", "url": "https://billing.stripe.test/p/1"},
        )

    url = _call(_provider(handler), "create_billing_portal_session", customer_id="cus_1", return_url="https://app.test")

    assert url == "https://billing.stripe.test/p/1"


def test_error_status_raises_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "boom", "type": "api_error"}})

    with pytest.raises(BillingProviderUnavailableError, match="500"):
        _call(_provider(handler), "create_billing_portal_session", customer_id="cus_1", return_url="https://app.test")


def test_invalid_request_raises_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            404,
            json={"error": {"message": "No such subscription", "type": "invalid_request_error"}},
        )

    with pytest.raises(BillingProviderUnavailableError, match="404"):
        _call(_provider(handler), "fetch_subscription", "sub_missing")


def test_transport_error_raises_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BillingProviderUnavailableError, match="unreachable"):
        _call(_provider(handler), "create_customer", account_id="acct-1", email=None)


def test_missing_response_field_raises_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"object": "customer"})

    with pytest.raises(BillingProviderUnavailableError):
        _call(_provider(handler), "create_customer", account_id="acct-1", email="owner@example.com")


def test_unparseable_subscription_raises_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "sub_1", "object": "subscription"})

    with pytest.raises(BillingProviderUnavailableError):
        _call(_provider(handler), "fetch_subscription", "sub_1")


@pytest.mark.parametrize("secret_key", [None, "", "sk_test_...", "changeme"])
def test_placeholder_key_is_not_configured(secret_key: str | None) -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never reached
        return httpx.Response(200, json={})

    assert provider_credentials_configured(secret_key) is False
    with pytest.raises(BillingProviderNotConfiguredError):
        _call(_provider(handler, secret_key=secret_key), "fetch_subscription", "sub_1")


def test_close_releases_owned_client() -> None:
    provider = StripeBillingProvider(secret_key="sk_test_123")

    async def run() -> None:
        provider._get_client()
        await provider.close()

    asyncio.run(run())

    assert provider._client is None
    assert provider._http_client is None
