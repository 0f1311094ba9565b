from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jobboard_api.services.entitlements import has_active_subscription
from jobboard_api.services.repository import RepositoryConflictError, RepositoryForbiddenError

logger = logging.getLogger(__name__)

FREE_PUBLISH_DELAY = timedelta(days=3)
FREE_MONTHLY_POST_LIMIT = 3


@dataclass(slots=True)
class ApprovalResult:
    job_post: dict[str, Any]
    author_entitled: bool


def compute_publish_at(*, entitled: bool, approved_at: datetime) -> datetime:
    """Paid accounts publish at approval time; free accounts three days later."""
    if entitled:
        return approved_at
    return approved_at + FREE_PUBLISH_DELAY


def start_of_month(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def approve_job_post(
    repository,
    *,
    job_post_id: str,
    moderator_id: str,
    now: datetime | None = None,
) -> ApprovalResult:
    # The publish time is fixed here; later entitlement changes do not move it.
    approved_at = now or datetime.now(timezone.utc)
    job_post = await repository.get_job_post(job_post_id=job_post_id)
    if job_post["status"] != "pending":
        raise RepositoryConflictError(f"job post is not pending (current status: {job_post['status']})")
    entitled = await has_active_subscription(repository, job_post["author_id"])
    published_at = compute_publish_at(entitled=entitled, approved_at=approved_at)

    updated = await repository.review_job_post(
        job_post_id=job_post_id,
        moderator_id=moderator_id,
        action="approve",
        status="published",
        reviewed_at=approved_at,
        published_at=published_at,
        expected_status="pending",
    )
    logger.info(
        "job post approved job_post_id=%s author_id=%s entitled=%s published_at=%s",
        job_post_id,
        job_post["author_id"],
        entitled,
        published_at.isoformat(),
    )
    return ApprovalResult(job_post=updated, author_entitled=entitled)


async def reject_job_post(
    repository,
    *,
    job_post_id: str,
    moderator_id: str,
    reason: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    reviewed_at = now or datetime.now(timezone.utc)
    updated = await repository.review_job_post(
        job_post_id=job_post_id,
        moderator_id=moderator_id,
        action="reject",
        status="draft",
        reviewed_at=reviewed_at,
        reason=reason,
        expected_status="pending",
    )
    logger.info("job post rejected job_post_id=%s moderator_id=%s", job_post_id, moderator_id)
    return updated


async def submit_job_post(
    repository,
    *,
    author_id: str,
    fields: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """Create a post: paid accounts publish directly, free ones queue for review."""
    submitted_at = now or datetime.now(timezone.utc)
    if await has_active_subscription(repository, author_id):
        return await repository.create_job_post(
            author_id=author_id,
            status="published",
            published_at=submitted_at,
            **fields,
        )

    posted_this_month = await repository.count_job_posts_since(
        author_id=author_id,
        since=start_of_month(submitted_at),
    )
    if posted_this_month >= FREE_MONTHLY_POST_LIMIT:
        raise RepositoryForbiddenError(
            f"free accounts are limited to {FREE_MONTHLY_POST_LIMIT} job posts per month; upgrade to post more",
        )

    return await repository.create_job_post(
        author_id=author_id,
        status="pending",
        published_at=None,
        **fields,
    )
