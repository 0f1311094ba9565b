from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import jobboard_api.core.security as security
from jobboard_api.core.config import Settings, get_settings
from jobboard_api.main import app
from jobboard_api.schemas.billing import SubscriptionResource
from jobboard_api.services.billing_provider import get_billing_provider
from jobboard_api.services.repository import (
    DeferredBillingEventRecord,
    MachineCredentialRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    SubscriptionRecord,
    get_repository,
)

WEBHOOK_SECRET = "whsec_test_signing_secret"
EMPLOYER_ID = "11111111-1111-1111-1111-111111111111"
MODERATOR_ID = "99999999-9999-9999-9999-999999999999"
REPLAYER_KEY = "replayer-secret-key"


class FakeBillingRepository:
    """In-memory stand-in mirroring the Postgres guards the services rely on."""

    def __init__(self, *, max_attempts: int = 3) -> None:
        self.subscriptions: dict[str, SubscriptionRecord] = {}
        self.customers: dict[str, str] = {}
        self.deferred: dict[str, dict[str, Any]] = {}
        self.job_posts: dict[str, dict[str, Any]] = {}
        self.moderation_logs: list[dict[str, Any]] = []
        self.credentials: dict[str, list[MachineCredentialRecord]] = {
            "billing-replayer": [
                MachineCredentialRecord(
                    module_db_id="module-1",
                    module_id="billing-replayer",
                    scopes=["billing:replay"],
                    key_hash=hashlib.sha256(REPLAYER_KEY.encode("utf-8")).hexdigest(),
                )
            ]
        }
        self.max_attempts = max_attempts
        self.unavailable = False
        self.writes = 0

    def _check(self) -> None:
        if self.unavailable:
            raise RepositoryUnavailableError("database unavailable")

    async def close(self) -> None:
        return None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        self._check()
        return list(self.credentials.get(module_id, []))

    async def get_subscription(self, *, account_id: str) -> SubscriptionRecord | None:
        self._check()
        return self.subscriptions.get(account_id)

    async def upsert_subscription(self, record: SubscriptionRecord) -> bool:
        self._check()
        current = self.subscriptions.get(record.account_id)
        if (
            current is not None
            and current.provider_event_at is not None
            and record.provider_event_at is not None
            and current.provider_event_at > record.provider_event_at
        ):
            return False
        self.subscriptions[record.account_id] = record
        self.writes += 1
        return True

    async def cancel_subscription(
        self,
        *,
        provider_subscription_id: str,
        provider_event_at: datetime | None,
        updated_at: datetime,
    ) -> SubscriptionRecord | None:
        self._check()
        for account_id, current in self.subscriptions.items():
            if current.provider_subscription_id != provider_subscription_id:
                continue
            if (
                current.provider_event_at is not None
                and provider_event_at is not None
                and current.provider_event_at > provider_event_at
            ):
                return None
            canceled = replace(
                current,
                status="canceled",
                provider_event_at=provider_event_at or current.provider_event_at,
                updated_at=updated_at,
            )
            self.subscriptions[account_id] = canceled
            self.writes += 1
            return canceled
        return None

    async def get_account_id_for_customer(self, *, provider_customer_id: str) -> str | None:
        self._check()
        return self.customers.get(provider_customer_id)

    async def get_provider_customer_id(self, *, account_id: str) -> str | None:
        self._check()
        return next((customer for customer, owner in self.customers.items() if owner == account_id), None)

    async def link_provider_customer(self, *, account_id: str, provider_customer_id: str) -> None:
        self._check()
        if provider_customer_id in self.customers or account_id in self.customers.values():
            raise RepositoryConflictError("account already linked to a billing customer")
        self.customers[provider_customer_id] = account_id

    async def defer_billing_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        reason: str,
    ) -> bool:
        self._check()
        if event_id in self.deferred:
            return False
        self.deferred[event_id] = {
            "event_type": event_type,
            # Round-trip through JSON like the jsonb column does.
            "payload": json.loads(json.dumps(payload)),
            "status": "pending",
            "attempts": 0,
            "last_error": reason,
            "last_outcome": None,
        }
        return True

    async def claim_deferred_billing_events(
        self,
        *,
        limit: int,
        lease_seconds: int,
    ) -> list[DeferredBillingEventRecord]:
        self._check()
        claimed: list[DeferredBillingEventRecord] = []
        for event_id, row in self.deferred.items():
            if len(claimed) >= limit:
                break
            if row["status"] != "pending":
                continue
            row["status"] = "claimed"
            row["attempts"] += 1
            claimed.append(
                DeferredBillingEventRecord(
                    event_id=event_id,
                    event_type=row["event_type"],
                    payload=row["payload"],
                    attempts=row["attempts"],
                )
            )
        return claimed

    async def complete_deferred_billing_event(self, *, event_id: str, outcome: str) -> None:
        self._check()
        row = self.deferred[event_id]
        row["status"] = "done"
        row["last_error"] = None
        row["last_outcome"] = outcome

    async def reschedule_deferred_billing_event(self, *, event_id: str, attempts: int, error: str) -> str:
        self._check()
        row = self.deferred[event_id]
        row["status"] = "dead_letter" if attempts >= self.max_attempts else "pending"
        row["last_error"] = error
        return row["status"]

    async def count_job_posts_since(self, *, author_id: str, since: datetime) -> int:
        self._check()
        return sum(
            1 for row in self.job_posts.values() if row["author_id"] == author_id and row["created_at"] >= since
        )

    async def create_job_post(
        self,
        *,
        author_id: str,
        title: str,
        description: str,
        location: str | None,
        job_type: str | None,
        salary_range: str | None,
        status: str,
        published_at: datetime | None,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        self._check()
        now = created_at or datetime.now(timezone.utc)
        row = {
            "id": str(uuid.uuid4()),
            "author_id": author_id,
            "title": title,
            "description": description,
            "location": location,
            "job_type": job_type,
            "salary_range": salary_range,
            "status": status,
            "published_at": published_at,
            "reviewed_at": None,
            "reviewed_by": None,
            "moderation_notes": None,
            "created_at": now,
            "updated_at": now,
        }
        self.job_posts[row["id"]] = row
        return dict(row)

    async def get_job_post(self, *, job_post_id: str) -> dict[str, Any]:
        self._check()
        row = self.job_posts.get(job_post_id)
        if row is None:
            raise RepositoryNotFoundError("job post not found")
        return dict(row)

    async def review_job_post(
        self,
        *,
        job_post_id: str,
        moderator_id: str,
        action: str,
        status: str,
        reviewed_at: datetime,
        published_at: datetime | None = None,
        reason: str | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        self._check()
        row = self.job_posts.get(job_post_id)
        if row is None:
            raise RepositoryNotFoundError("job post not found")
        if expected_status is not None and row["status"] != expected_status:
            raise RepositoryConflictError(f"job post is not {expected_status} (current status: {row['status']})")
        row["status"] = status
        row["published_at"] = published_at or row["published_at"]
        row["reviewed_at"] = reviewed_at
        row["reviewed_by"] = moderator_id
        row["moderation_notes"] = reason or row["moderation_notes"]
        row["updated_at"] = reviewed_at
        self.moderation_logs.append(
            {"moderator_id": moderator_id, "target_id": job_post_id, "action": action, "reason": reason}
        )
        return dict(row)


class FakeBillingProvider:
    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.created_customers: list[str] = []
        self.checkout_calls: list[dict[str, Any]] = []
        self.portal_calls: list[dict[str, Any]] = []

    async def close(self) -> None:
        return None

    async def fetch_subscription(self, subscription_id: str) -> SubscriptionResource:
        return SubscriptionResource.model_validate(self.subscriptions[subscription_id])

    async def create_customer(self, *, account_id: str, email: str | None) -> str:
        customer_id = f"cus_{len(self.created_customers) + 1:04d}"
        self.created_customers.append(customer_id)
        return customer_id

    async def create_checkout_session(self, **kwargs: Any) -> str:
        self.checkout_calls.append(kwargs)
        return "https://checkout.stripe.test/session/cs_1"

    async def create_billing_portal_session(self, **kwargs: Any) -> str:
        self.portal_calls.append(kwargs)
        return "https://billing.stripe.test/session/bps_1"


def subscription_object(
    *,
    subscription_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price_id: str = "price_pro",
    period_end: int = 1_900_000_000,
    metadata: dict[str, str] | None = None,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata if metadata is not None else {"account_id": EMPLOYER_ID},
        "items": {"data": [{"price": {"id": price_id}, "current_period_end": period_end}]},
    }


def build_event(event_type: str, obj: dict[str, Any], *, event_id: str = "evt_1", created: int | None = None) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def sign(payload: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def billing_helpers() -> Any:
    """Expose payload builders to test modules without importing conftest."""

    class Helpers:
        employer_id = EMPLOYER_ID
        moderator_id = MODERATOR_ID
        replayer_key = REPLAYER_KEY
        webhook_secret = WEBHOOK_SECRET
        subscription = staticmethod(subscription_object)
        event = staticmethod(build_event)
        sign = staticmethod(sign)

    return Helpers


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_anon_key="anon-key",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_pro_price_id="price_pro",
        stripe_premium_price_id="price_premium",
        database_url="postgresql://localhost/jobboard",
        otel_enabled=False,
    )


@pytest.fixture
def fake_repository() -> FakeBillingRepository:
    return FakeBillingRepository()


@pytest.fixture
def fake_provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def api_client(
    test_settings: Settings,
    fake_repository: FakeBillingRepository,
    fake_provider: FakeBillingProvider,
) -> Iterator[TestClient]:
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_repository] = lambda: fake_repository
    app.dependency_overrides[get_billing_provider] = lambda: fake_provider

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def login_as(monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], dict[str, str]]:
    def _login(role: str, user_id: str = EMPLOYER_ID) -> dict[str, str]:
        async def _fake_fetch(**_: Any) -> dict[str, Any]:
            return {"id": user_id, "app_metadata": {"role": role}}

        monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
        return {"Authorization": "Bearer token"}

    return _login
