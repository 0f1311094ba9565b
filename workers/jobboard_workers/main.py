from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from jobboard_workers.core.config import get_settings
from jobboard_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from jobboard_workers.services.billing_client import BillingReplayClient, ReplayResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_replay_cycle(client: BillingReplayClient, *, batch_size: int) -> ReplayResult:
    with tracer.start_as_current_span("worker.replay_deferred_billing_events") as span:
        result = await client.replay_deferred_events(limit=batch_size)
        span.set_attribute("billing.deferred.claimed", result.claimed)
        span.set_attribute("billing.deferred.reconciled", result.reconciled)
        if result.claimed:
            logger.info(
                "replayed deferred billing events claimed=%s reconciled=%s rescheduled=%s dead_lettered=%s",
                result.claimed,
                result.reconciled,
                result.rescheduled,
                result.dead_lettered,
            )
        if result.dead_lettered:
            logger.error("deferred billing events dead-lettered count=%s", result.dead_lettered)
        return result


def next_backoff(current: float, *, max_backoff_seconds: float, jitter: float | None = None) -> float:
    jitter = random.uniform(0.0, 0.5) if jitter is None else jitter
    return min(current * (2.0 + jitter), max_backoff_seconds)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = BillingReplayClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                result = await run_replay_cycle(client, batch_size=settings.replay_batch_size)
                backoff = settings.poll_interval_seconds
                # A full batch means more events are likely due.
                if result.claimed < settings.replay_batch_size:
                    await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                sleep_for = next_backoff(backoff, max_backoff_seconds=settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
