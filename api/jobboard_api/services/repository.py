from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from jobboard_api.core.config import get_settings

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class SubscriptionRecord:
    account_id: str
    provider_subscription_id: str
    provider_customer_id: str
    plan_id: str | None
    status: str
    current_period_end: datetime | None
    updated_at: datetime
    provider_event_at: datetime | None = None


@dataclass(slots=True)
class DeferredBillingEventRecord:
    event_id: str
    event_type: str
    payload: dict[str, Any]
    attempts: int


DEFERRED_EVENT_STATUSES = {"pending", "claimed", "done", "dead_letter"}
JOB_POST_STATUSES = {"draft", "pending", "published"}

_SUBSCRIPTION_COLUMNS = """
  account_id::text as account_id,
  provider_subscription_id,
  provider_customer_id,
  plan_id,
  status,
  current_period_end,
  provider_event_at,
  updated_at
"""

_JOB_POST_COLUMNS = """
  id::text as id,
  author_id::text as author_id,
  title,
  description,
  location,
  job_type,
  salary_range,
  status::text as status,
  published_at,
  reviewed_at,
  reviewed_by::text as reviewed_by,
  moderation_notes,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        deferred_event_max_attempts: int,
        deferred_event_retry_base_seconds: int,
        deferred_event_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.deferred_event_max_attempts = max(1, deferred_event_max_attempts)
        self.deferred_event_retry_base_seconds = max(0, deferred_event_retry_base_seconds)
        self.deferred_event_retry_max_seconds = max(0, deferred_event_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # Subscriptions

    async def get_subscription(self, *, account_id: str) -> SubscriptionRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_SUBSCRIPTION_COLUMNS}
                from subscriptions
                where account_id = $1::uuid
                """,
                account_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("account_id must be a uuid") from exc
        return self._subscription_row_to_record(row) if row else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> bool:
        """Insert or replace the account's subscription row.

        Returns False when the stored row was written from a newer provider
        event, in which case nothing changes.
        """
        pool = await self._get_pool()
        try:
            applied_account_id = await pool.fetchval(
                """
                insert into subscriptions (
                  account_id,
                  provider_subscription_id,
                  provider_customer_id,
                  plan_id,
                  status,
                  current_period_end,
                  provider_event_at,
                  updated_at
                )
                values ($1::uuid, $2, $3, $4, $5, $6, $7, $8)
                on conflict (account_id) do update
                set
                  provider_subscription_id = excluded.provider_subscription_id,
                  provider_customer_id = excluded.provider_customer_id,
                  plan_id = excluded.plan_id,
                  status = excluded.status,
                  current_period_end = excluded.current_period_end,
                  provider_event_at = excluded.provider_event_at,
                  updated_at = excluded.updated_at
                where subscriptions.provider_event_at is null
                   or excluded.provider_event_at is null
                   or subscriptions.provider_event_at <= excluded.provider_event_at
                returning account_id::text
                """,
                record.account_id,
                record.provider_subscription_id,
                record.provider_customer_id,
                record.plan_id,
                record.status,
                record.current_period_end,
                record.provider_event_at,
                record.updated_at,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("account_id must be a uuid") from exc
        return applied_account_id is not None

    async def cancel_subscription(
        self,
        *,
        provider_subscription_id: str,
        provider_event_at: datetime | None,
        updated_at: datetime,
    ) -> SubscriptionRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update subscriptions
            set
              status = 'canceled',
              provider_event_at = coalesce($2, provider_event_at),
              updated_at = $3
            where provider_subscription_id = $1
              and (provider_event_at is null or $2::timestamptz is null or provider_event_at <= $2)
            returning {_SUBSCRIPTION_COLUMNS}
            """,
            provider_subscription_id,
            provider_event_at,
            updated_at,
        )
        return self._subscription_row_to_record(row) if row else None

    # Account <-> billing customer mapping

    async def get_account_id_for_customer(self, *, provider_customer_id: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select account_id::text
            from billing_customers
            where provider_customer_id = $1
            """,
            provider_customer_id,
        )

    async def get_provider_customer_id(self, *, account_id: str) -> str | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(
                """
                select provider_customer_id
                from billing_customers
                where account_id = $1::uuid
                """,
                account_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("account_id must be a uuid") from exc

    async def link_provider_customer(self, *, account_id: str, provider_customer_id: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into billing_customers (provider_customer_id, account_id)
                values ($1, $2::uuid)
                """,
                provider_customer_id,
                account_id,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("account already linked to a billing customer") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("account_id must be a uuid") from exc

    # Deferred billing events

    async def defer_billing_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        reason: str,
    ) -> bool:
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            insert into billing_deferred_events (
              event_id,
              event_type,
              payload,
              status,
              attempts,
              next_attempt_at,
              last_error
            )
            values ($1, $2, $3::jsonb, 'pending', 0, now() + ($4::int * interval '1 second'), $5)
            on conflict (event_id) do nothing
            returning event_id
            """,
            event_id,
            event_type,
            json.dumps(payload),
            self._compute_retry_delay_seconds(attempt=1),
            reason,
        )
        return inserted is not None

    async def claim_deferred_billing_events(
        self,
        *,
        limit: int,
        lease_seconds: int,
    ) -> list[DeferredBillingEventRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 500))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select event_id
                      from billing_deferred_events
                      where (status = 'pending' and next_attempt_at <= now())
                         or (status = 'claimed' and lease_expires_at <= now())
                      order by next_attempt_at asc
                      limit $1
                      for update skip locked
                    )
                    update billing_deferred_events d
                    set
                      status = 'claimed',
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      attempts = d.attempts + 1,
                      updated_at = now()
                    from due
                    where d.event_id = due.event_id
                    returning d.event_id, d.event_type, d.payload, d.attempts
                    """,
                    bounded_limit,
                    lease_seconds,
                )
        return [self._deferred_event_row_to_record(row) for row in rows]

    async def complete_deferred_billing_event(self, *, event_id: str, outcome: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update billing_deferred_events
            set
              status = 'done',
              lease_expires_at = null,
              last_error = null,
              last_outcome = $2,
              updated_at = now()
            where event_id = $1
            """,
            event_id,
            outcome,
        )

    async def reschedule_deferred_billing_event(self, *, event_id: str, attempts: int, error: str) -> str:
        """Back off the event for another attempt, or dead-letter it."""
        if attempts >= self.deferred_event_max_attempts:
            status = "dead_letter"
            delay_seconds = 0
        else:
            status = "pending"
            delay_seconds = self._compute_retry_delay_seconds(attempt=attempts + 1)

        pool = await self._get_pool()
        await pool.execute(
            """
            update billing_deferred_events
            set
              status = $2,
              next_attempt_at = now() + ($3::int * interval '1 second'),
              lease_expires_at = null,
              last_error = $4,
              updated_at = now()
            where event_id = $1
            """,
            event_id,
            status,
            delay_seconds,
            error,
        )
        return status

    # Job posts and moderation

    async def count_job_posts_since(self, *, author_id: str, since: datetime) -> int:
        pool = await self._get_pool()
        try:
            count = await pool.fetchval(
                """
                select count(*)
                from job_posts
                where author_id = $1::uuid and created_at >= $2
                """,
                author_id,
                since,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("author_id must be a uuid") from exc
        return int(count or 0)

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
    ) -> dict[str, Any]:
        if status not in JOB_POST_STATUSES:
            raise RepositoryValidationError(f"unsupported job post status: {status}")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into job_posts (
                  author_id,
                  title,
                  description,
                  location,
                  job_type,
                  salary_range,
                  status,
                  published_at
                )
                values ($1::uuid, $2, $3, $4, $5, $6, $7::job_post_status, $8)
                returning {_JOB_POST_COLUMNS}
                """,
                author_id,
                title,
                description,
                location,
                job_type,
                salary_range,
                status,
                published_at,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("author_id must be a uuid") from exc
        return self._job_post_row_to_dict(row)

    async def get_job_post(self, *, job_post_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_JOB_POST_COLUMNS}
                from job_posts
                where id = $1::uuid
                """,
                job_post_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job post not found") from exc
        if not row:
            raise RepositoryNotFoundError("job post not found")
        return self._job_post_row_to_dict(row)

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
        """Apply a moderation decision and log it in one transaction.

        With ``expected_status`` the update only matches a post still in that
        status; a post that exists in any other status raises
        ``RepositoryConflictError`` and is left untouched.
        """
        if status not in JOB_POST_STATUSES:
            raise RepositoryValidationError(f"unsupported job post status: {status}")
        if expected_status is not None and expected_status not in JOB_POST_STATUSES:
            raise RepositoryValidationError(f"unsupported job post status: {expected_status}")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update job_posts
                        set
                          status = $2::job_post_status,
                          published_at = coalesce($3, published_at),
                          reviewed_at = $4,
                          reviewed_by = $5::uuid,
                          moderation_notes = coalesce($6, moderation_notes),
                          updated_at = now()
                        where id = $1::uuid
                          and ($7::job_post_status is null or status = $7::job_post_status)
                        returning {_JOB_POST_COLUMNS}
                        """,
                        job_post_id,
                        status,
                        published_at,
                        reviewed_at,
                        moderator_id,
                        reason,
                        expected_status,
                    )
                    if not row:
                        current = await conn.fetchval(
                            "select status::text from job_posts where id = $1::uuid",
                            job_post_id,
                        )
                        if current is None:
                            raise RepositoryNotFoundError("job post not found")
                        raise RepositoryConflictError(
                            f"job post is not {expected_status} (current status: {current})"
                        )

                    await conn.execute(
                        """
                        insert into moderation_logs (moderator_id, target_id, target_type, action, reason)
                        values ($1::uuid, $2::uuid, 'job', $3, $4)
                        """,
                        moderator_id,
                        job_post_id,
                        action,
                        reason,
                    )
                    return self._job_post_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job post not found") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            logger.exception("database pool creation failed")
            raise RepositoryUnavailableError("database unavailable") from exc

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.deferred_event_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.deferred_event_retry_base_seconds * (2**multiplier)
        return min(delay, self.deferred_event_retry_max_seconds)

    @staticmethod
    def _subscription_row_to_record(row: asyncpg.Record) -> SubscriptionRecord:
        return SubscriptionRecord(
            account_id=row["account_id"],
            provider_subscription_id=row["provider_subscription_id"],
            provider_customer_id=row["provider_customer_id"],
            plan_id=row["plan_id"],
            status=row["status"],
            current_period_end=row["current_period_end"],
            updated_at=row["updated_at"],
            provider_event_at=row["provider_event_at"],
        )

    @staticmethod
    def _deferred_event_row_to_record(row: asyncpg.Record) -> DeferredBillingEventRecord:
        payload = row["payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return DeferredBillingEventRecord(
            event_id=row["event_id"],
            event_type=row["event_type"],
            payload=payload,
            attempts=int(row["attempts"]),
        )

    @staticmethod
    def _job_post_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "author_id": row["author_id"],
            "title": row["title"],
            "description": row["description"],
            "location": row["location"],
            "job_type": row["job_type"],
            "salary_range": row["salary_range"],
            "status": row["status"],
            "published_at": row["published_at"],
            "reviewed_at": row["reviewed_at"],
            "reviewed_by": row["reviewed_by"],
            "moderation_notes": row["moderation_notes"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        deferred_event_max_attempts=settings.deferred_event_max_attempts,
        deferred_event_retry_base_seconds=settings.deferred_event_retry_base_seconds,
        deferred_event_retry_max_seconds=settings.deferred_event_retry_max_seconds,
    )
