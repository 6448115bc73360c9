from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel

from assetflow.core import metrics
from assetflow.schemas.queue import QueueJob

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)


async def dispatch(services: "Services", *, queue: str, name: str, payload: BaseModel, asset_id: UUID) -> QueueJob:
    """Record a PENDING ledger row for a new job, then publish it.

    The ledger row is written before the push so a fast consumer never sees a job
    the ledger does not know about. A ledger failure is logged and does not stop
    the push; a push failure propagates to the caller.
    """
    job = services.queue.new_job(queue, name, payload.model_dump(mode="json"))
    await services.ledger.on_enqueued(job, asset_id=asset_id)
    await services.queue.push(job)
    metrics.record_job_enqueued(queue)
    logger.info(
        "job_enqueued",
        extra={"queue_name": queue, "job_name": name, "queue_job_id": job.id, "asset_id": str(asset_id)},
    )
    return job
