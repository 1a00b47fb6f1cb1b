from __future__ import annotations

import asyncio
import logging
import random

import httpx
from opentelemetry import trace

from relay_worker.core.config import Settings, get_settings
from relay_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from relay_worker.jobs.executor import JobHandler, execute_job, load_handler
from relay_worker.jobs.wake import WakeState, compute_wake_delay
from relay_worker.services.queue_client import QueueClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def load_handlers(settings: Settings) -> dict[str, JobHandler]:
    handlers: dict[str, JobHandler] = {}
    if settings.mirror_handler:
        handlers["mirror"] = load_handler(settings.mirror_handler)
    if settings.role_sync_handler:
        handlers["role_sync"] = load_handler(settings.role_sync_handler)
    return handlers


async def process_queues(
    client: QueueClient,
    handlers: dict[str, JobHandler],
    *,
    worker_id: str,
    limit: int,
) -> int:
    """Claim one batch from every handled queue and report each outcome; returns jobs completed.

    A failed claim propagates to the caller's backoff. A failed completion only skips that job.
    """
    processed = 0
    for queue, handler in handlers.items():
        jobs = await client.claim(queue, worker_id=worker_id, limit=limit)
        for job in jobs:
            with tracer.start_as_current_span("worker.process_job") as job_span:
                job_span.set_attribute("job.id", job["id"])
                job_span.set_attribute("job.queue", queue)
                outcome = await execute_job(job, handler)
                try:
                    result = await client.complete(
                        queue,
                        job["id"],
                        claim_token=job["claim_token"],
                        success=outcome.success,
                        error=outcome.error,
                        result_metadata=outcome.result_metadata,
                    )
                except httpx.HTTPError:
                    # Remaining jobs in the batch are leased to us; keep reporting them.
                    logger.exception("job completion failed queue=%s job_id=%s", queue, job["id"])
                    continue
                if result.get("ignored"):
                    logger.warning(
                        "completion ignored queue=%s job_id=%s reason=%s",
                        queue,
                        job["id"],
                        result.get("reason"),
                    )
                processed += 1
    return processed


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(settings)
    telemetry_runtime = setup_worker_telemetry(settings)
    handlers = load_handlers(settings)
    client = QueueClient(
        settings.api_base_url,
        mirror_token=settings.mirror_worker_token,
        role_sync_token=settings.role_sync_worker_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    handlers = {queue: handler for queue, handler in handlers.items() if client.has_credentials(queue)}
    if not handlers:
        logger.warning("no queue has both a handler and a credential configured; worker will idle")

    backoff = settings.wake_fallback_min_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    processed = await process_queues(
                        client,
                        handlers,
                        worker_id=settings.worker_id,
                        limit=settings.claim_limit,
                    )
                    state: WakeState | None = await client.wake_state() if handlers else None
                backoff = settings.wake_fallback_min_seconds
            except httpx.HTTPError as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(max(backoff, 0.5) * (2.0 + jitter), settings.max_backoff_seconds)
                logger.warning("worker poll failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
                continue

            if processed:
                continue

            wake = compute_wake_delay(
                state,
                connection_healthy=state is not None,
                fallback_min_seconds=settings.wake_fallback_min_seconds,
                fallback_max_seconds=settings.wake_fallback_max_seconds,
                queues=handlers.keys(),
            )
            delay = min(wake.delay_seconds, settings.wake_max_sleep_seconds)
            if wake.reason == "ready_jobs":
                # Another worker won the claim race; avoid spinning on the same snapshot.
                delay = settings.wake_fallback_min_seconds
            logger.debug("worker sleeping seconds=%.2f reason=%s", delay, wake.reason)
            await asyncio.sleep(delay)
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
