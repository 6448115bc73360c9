from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import TYPE_CHECKING

from assetflow.core import metrics
from assetflow.core.errors import JobTimeout
from assetflow.core.logging_config import job_log_context
from assetflow.schemas.queue import QueueJob
from assetflow.services.queue_fabric import ALL_QUEUES

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)

Handler = Callable[["Services", QueueJob], Awaitable[None]]


async def run_job(services: "Services", job: QueueJob, handler: Handler) -> bool:
    """Run one reserved job to completion, acking or failing it with the fabric.

    Returns True when the job completed. Handler errors never escape; they become a
    retry or a dead letter, and the ledger row follows as a best-effort update.
    """
    with job_log_context(job.id, job.queue, job.attempt):
        await services.ledger.on_active(job)
        timeout = services.queue.timeout_for(job.queue)
        try:
            await asyncio.wait_for(handler(services, job), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error: Exception = exc
            if isinstance(exc, asyncio.TimeoutError):
                error = JobTimeout(f"{job.name} exceeded {timeout}s", timeout=timeout)
            message = f"{type(error).__name__}: {error}"
            logger.warning("job_failed", extra={"job_name": job.name, "attempt": job.attempt, "error": message}, exc_info=True)
            outcome = await services.queue.fail(job, message)
            if outcome.dead_lettered:
                metrics.record_job_dead_lettered(job.queue)
                await services.ledger.on_dead_lettered(job, message)
            else:
                metrics.record_job_failed(job.queue)
                await services.ledger.on_failed(job, message)
                logger.info("job_retry_scheduled", extra={"retry_in_seconds": outcome.retry_in_seconds})
            return False

        await services.queue.ack(job)
        await services.ledger.on_completed(job)
        metrics.record_job_completed(job.queue)
        logger.info("job_completed", extra={"job_name": job.name, "attempt": job.attempt})
        return True


async def consume(services: "Services", queue: str, handler: Handler, stop: asyncio.Event) -> int:
    """Reserve and run jobs from ``queue`` until ``stop`` is set; returns jobs handled.

    The stop flag is checked between jobs, so an in-flight job always finishes.
    """
    poll_timeout = float(services.settings.queue_poll_timeout_seconds)
    handled = 0
    while not stop.is_set():
        try:
            job = await services.queue.reserve(queue, timeout=poll_timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("worker_reserve_failed", extra={"queue_name": queue})
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=max(0.5, poll_timeout))
            continue
        if job is None:
            continue
        await run_job(services, job, handler)
        handled += 1
    return handled


async def run_maintenance_once(services: "Services", queues: tuple[str, ...] = ALL_QUEUES) -> dict[str, int]:
    stats = {"promoted": 0, "requeued": 0, "dead_lettered": 0, "swept_dirs": 0}
    for queue in queues:
        stats["promoted"] += await services.queue.promote_due(queue)
        for job, outcome in await services.queue.requeue_expired(queue):
            if outcome.dead_lettered:
                stats["dead_lettered"] += 1
                metrics.record_job_dead_lettered(queue)
                await services.ledger.on_dead_lettered(job, job.last_error or "lease expired")
            else:
                stats["requeued"] += 1
    stats["swept_dirs"] = await services.workspace.sweep_stale(services.settings.workspace_stale_seconds)
    if any(stats.values()):
        logger.info("maintenance_pass_completed", extra=stats)
    return stats


async def maintenance_loop(services: "Services", stop: asyncio.Event) -> None:
    interval = max(1, int(services.settings.maintenance_interval_seconds))
    while not stop.is_set():
        try:
            await run_maintenance_once(services)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("maintenance_pass_failed")
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)
