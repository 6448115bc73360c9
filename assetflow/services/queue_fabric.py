"""Redis-backed work queues with at-least-once delivery.

Every queue owns five keys under ``{prefix}:{queue}:``:

- ``ready``   list of job ids waiting for a consumer
- ``active``  list of job ids currently reserved
- ``leases``  sorted set of active ids scored by lease deadline
- ``delayed`` sorted set of ids scored by the time they may be retried
- ``dead``    list of ids that exhausted their attempts

plus a ``jobs`` hash holding the JSON envelope of every live job. A consumer that
dies between ``reserve`` and ``ack`` leaves its lease behind; ``requeue_expired``
hands the job to another consumer. Redelivered jobs are not deduplicated.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from assetflow.core.config import Settings
from assetflow.core.redis_client import await_if_needed
from assetflow.models.asset import MediaKind
from assetflow.schemas.media import QueueStatsRead
from assetflow.schemas.queue import FailureOutcome, QueueJob

logger = logging.getLogger(__name__)

QUEUE_VIDEO_PROCESSING = "video-processing"
QUEUE_VIDEO_THUMBNAIL = "video-thumbnail"
QUEUE_VIDEO_UPLOAD = "video-upload"
QUEUE_IMAGE_PROCESSING = "image-processing"
QUEUE_IMAGE_THUMBNAIL = "image-thumbnail"
QUEUE_IMAGE_UPLOAD = "image-upload"

ALL_QUEUES = (
    QUEUE_VIDEO_PROCESSING,
    QUEUE_VIDEO_THUMBNAIL,
    QUEUE_VIDEO_UPLOAD,
    QUEUE_IMAGE_PROCESSING,
    QUEUE_IMAGE_THUMBNAIL,
    QUEUE_IMAGE_UPLOAD,
)

_DEFAULT_BACKOFF_SECONDS = (30, 120, 600, 1800)
_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class QueueSet:
    processing: str
    thumbnail: str
    upload: str


_TOPOLOGY: dict[MediaKind, QueueSet] = {
    MediaKind.video: QueueSet(QUEUE_VIDEO_PROCESSING, QUEUE_VIDEO_THUMBNAIL, QUEUE_VIDEO_UPLOAD),
    MediaKind.image: QueueSet(QUEUE_IMAGE_PROCESSING, QUEUE_IMAGE_THUMBNAIL, QUEUE_IMAGE_UPLOAD),
}


def topology(kind: MediaKind) -> QueueSet:
    """Queues for a media kind that has derivations; raises KeyError for any other kind."""
    return _TOPOLOGY[kind]


def queues_for(kind: MediaKind | str) -> QueueSet | None:
    try:
        return _TOPOLOGY.get(MediaKind(kind))
    except ValueError:
        return None


def stage_for(queue: str) -> str:
    """Return the pipeline stage (processing / thumbnail / upload) served by a queue."""
    stage = (queue or "").rsplit("-", 1)[-1]
    if queue not in ALL_QUEUES:
        raise ValueError(f"Unknown queue: {queue}")
    return stage


def _now() -> float:
    return time.time()


class QueueFabric:
    def __init__(
        self,
        redis: Any,
        *,
        prefix: str = "assetflow:queue",
        max_attempts: int = 5,
        backoff_seconds: tuple[int, ...] | list[int] = _DEFAULT_BACKOFF_SECONDS,
        lease_grace_seconds: int = 60,
        stage_timeouts: dict[str, int] | None = None,
    ) -> None:
        self.redis = redis
        self.prefix = prefix.rstrip(":")
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = tuple(int(v) for v in backoff_seconds) or _DEFAULT_BACKOFF_SECONDS
        self.lease_grace_seconds = max(0, int(lease_grace_seconds))
        self.stage_timeouts = dict(stage_timeouts or {})

    @classmethod
    def from_settings(cls, redis: Any, settings: Settings) -> "QueueFabric":
        return cls(
            redis,
            prefix=settings.queue_prefix,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.queue_retry_backoff_seconds,
            lease_grace_seconds=settings.queue_lease_grace_seconds,
            stage_timeouts=settings.job_timeout_seconds,
        )

    def _key(self, queue: str, part: str) -> str:
        return f"{self.prefix}:{queue}:{part}"

    def timeout_for(self, queue: str) -> int:
        return int(self.stage_timeouts.get(stage_for(queue), 600))

    def lease_seconds(self, queue: str) -> int:
        return self.timeout_for(queue) + self.lease_grace_seconds

    def retry_delay_seconds(self, attempt: int) -> int:
        idx = max(0, min(int(attempt) - 1, len(self.backoff_seconds) - 1))
        return int(self.backoff_seconds[idx])

    def new_job(self, queue: str, name: str, data: dict[str, Any]) -> QueueJob:
        """Build a job envelope with a fabric-assigned id without publishing it."""
        stage_for(queue)
        return QueueJob(id=uuid.uuid4().hex, queue=queue, name=name, data=data, max_attempts=self.max_attempts)

    async def _store(self, job: QueueJob) -> None:
        await await_if_needed(self.redis.hset(self._key(job.queue, "jobs"), job.id, job.model_dump_json()))

    async def _load(self, queue: str, job_id: str) -> QueueJob | None:
        raw = await await_if_needed(self.redis.hget(self._key(queue, "jobs"), job_id))
        if not raw:
            return None
        return QueueJob.model_validate_json(raw)

    async def push(self, job: QueueJob) -> None:
        await self._store(job)
        await await_if_needed(self.redis.rpush(self._key(job.queue, "ready"), job.id))

    async def reserve(self, queue: str, *, timeout: float = 2.0) -> QueueJob | None:
        job_id = await await_if_needed(
            self.redis.blmove(self._key(queue, "ready"), self._key(queue, "active"), timeout, "LEFT", "RIGHT")
        )
        if not job_id:
            return None
        job = await self._load(queue, str(job_id))
        if job is None:
            logger.warning("queue_job_envelope_missing", extra={"queue_name": queue, "queue_job_id": job_id})
            await await_if_needed(self.redis.lrem(self._key(queue, "active"), 0, job_id))
            return None
        job.attempt += 1
        await self._store(job)
        await await_if_needed(self.redis.zadd(self._key(queue, "leases"), {job.id: _now() + self.lease_seconds(queue)}))
        return job

    async def _release_lease(self, job: QueueJob) -> None:
        await await_if_needed(self.redis.lrem(self._key(job.queue, "active"), 0, job.id))
        await await_if_needed(self.redis.zrem(self._key(job.queue, "leases"), job.id))

    async def ack(self, job: QueueJob) -> None:
        await self._release_lease(job)
        await await_if_needed(self.redis.hdel(self._key(job.queue, "jobs"), job.id))

    async def _dead_letter(self, job: QueueJob) -> None:
        await self._store(job)
        await await_if_needed(self.redis.rpush(self._key(job.queue, "dead"), job.id))

    async def fail(self, job: QueueJob, error: str) -> FailureOutcome:
        job.last_error = (error or "")[:_MAX_ERROR_LENGTH] or None
        await self._release_lease(job)
        if job.exhausted:
            await self._dead_letter(job)
            logger.warning(
                "queue_job_dead_lettered",
                extra={"queue_name": job.queue, "queue_job_id": job.id, "attempt": job.attempt},
            )
            return FailureOutcome(job_id=job.id, dead_lettered=True)

        delay = self.retry_delay_seconds(job.attempt)
        await self._store(job)
        await await_if_needed(self.redis.zadd(self._key(job.queue, "delayed"), {job.id: _now() + delay}))
        return FailureOutcome(job_id=job.id, dead_lettered=False, retry_in_seconds=delay)

    async def promote_due(self, queue: str, *, now: float | None = None) -> int:
        """Move retries whose backoff elapsed back onto the ready list."""
        delayed_key = self._key(queue, "delayed")
        due = await await_if_needed(self.redis.zrangebyscore(delayed_key, "-inf", now if now is not None else _now()))
        moved = 0
        for job_id in due or []:
            # Only the caller that removes the member may republish it.
            if not await await_if_needed(self.redis.zrem(delayed_key, job_id)):
                continue
            await await_if_needed(self.redis.rpush(self._key(queue, "ready"), job_id))
            moved += 1
        return moved

    async def requeue_expired(self, queue: str, *, now: float | None = None) -> list[tuple[QueueJob, FailureOutcome]]:
        """Return jobs whose lease lapsed to the ready list, or dead-letter them when exhausted."""
        leases_key = self._key(queue, "leases")
        expired = await await_if_needed(self.redis.zrangebyscore(leases_key, "-inf", now if now is not None else _now()))
        results: list[tuple[QueueJob, FailureOutcome]] = []
        for job_id in expired or []:
            if not await await_if_needed(self.redis.zrem(leases_key, job_id)):
                continue
            await await_if_needed(self.redis.lrem(self._key(queue, "active"), 0, job_id))
            job = await self._load(queue, str(job_id))
            if job is None:
                continue
            job.last_error = "lease expired"
            if job.exhausted:
                await self._dead_letter(job)
                results.append((job, FailureOutcome(job_id=job.id, dead_lettered=True)))
                continue
            await self._store(job)
            await await_if_needed(self.redis.rpush(self._key(queue, "ready"), job.id))
            results.append((job, FailureOutcome(job_id=job.id, dead_lettered=False, retry_in_seconds=0)))
        if results:
            logger.info("queue_leases_requeued", extra={"queue_name": queue, "count": len(results)})
        return results

    async def stats(self, queue: str) -> QueueStatsRead:
        return QueueStatsRead(
            queue=queue,
            ready=int(await await_if_needed(self.redis.llen(self._key(queue, "ready"))) or 0),
            active=int(await await_if_needed(self.redis.llen(self._key(queue, "active"))) or 0),
            delayed=int(await await_if_needed(self.redis.zcard(self._key(queue, "delayed"))) or 0),
            dead=int(await await_if_needed(self.redis.llen(self._key(queue, "dead"))) or 0),
        )

    async def all_stats(self) -> list[QueueStatsRead]:
        return [await self.stats(queue) for queue in ALL_QUEUES]
