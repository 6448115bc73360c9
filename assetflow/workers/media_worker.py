from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import socket
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from assetflow.core.config import Settings, get_settings
from assetflow.core.container import Services
from assetflow.core.logging_config import configure_logging
from assetflow.core.redis_client import await_if_needed
from assetflow.core.sentry import init_sentry
from assetflow.core.startup_checks import ensure_binaries, validate_worker_settings
from assetflow.services.leader_lock import run_as_leader
from assetflow.services.queue_fabric import (
    ALL_QUEUES,
    QUEUE_IMAGE_PROCESSING,
    QUEUE_IMAGE_THUMBNAIL,
    QUEUE_IMAGE_UPLOAD,
    QUEUE_VIDEO_PROCESSING,
    QUEUE_VIDEO_THUMBNAIL,
    QUEUE_VIDEO_UPLOAD,
)
from assetflow.workers import image, upload, video
from assetflow.workers.pool import Handler, consume, maintenance_loop

logger = logging.getLogger(__name__)

HANDLERS: dict[str, Handler] = {
    QUEUE_VIDEO_PROCESSING: video.process_video,
    QUEUE_VIDEO_THUMBNAIL: video.make_video_thumbnail,
    QUEUE_VIDEO_UPLOAD: upload.upload_variant,
    QUEUE_IMAGE_PROCESSING: image.process_image,
    QUEUE_IMAGE_THUMBNAIL: image.make_image_thumbnail,
    QUEUE_IMAGE_UPLOAD: upload.upload_variant,
}

MAINTENANCE_LOCK_NAME = "assetflow:maintenance"


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(settings: Settings, worker_id: str, queues: Iterable[str]) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "queues": list(queues),
        "app_version": (settings.app_version or "").strip() or None,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


def _write_heartbeat_file(path: str, payload: dict[str, object]) -> None:
    try:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except Exception:
        logger.exception("media_worker_heartbeat_file_failed")


async def _publish_heartbeat(services: Services, *, worker_id: str, queues: Iterable[str]) -> None:
    settings = services.settings
    payload = _heartbeat_payload(settings, worker_id, queues)
    _write_heartbeat_file(settings.worker_heartbeat_file, payload)
    key = f"{settings.worker_heartbeat_prefix}:{worker_id}"
    await await_if_needed(
        services.redis.set(
            key,
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False),
            ex=max(10, int(settings.worker_heartbeat_ttl_seconds)),
        )
    )


async def _heartbeat_loop(services: Services, stop: asyncio.Event, *, worker_id: str, queues: list[str]) -> None:
    interval = max(5.0, float(services.settings.worker_heartbeat_ttl_seconds) / 2.0)
    while not stop.is_set():
        try:
            await _publish_heartbeat(services, worker_id=worker_id, queues=queues)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("media_worker_heartbeat_failed")
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def _resolve_queues(queues: Iterable[str] | None) -> list[str]:
    selected = [q.strip() for q in (queues or ALL_QUEUES) if q and q.strip()]
    unknown = [q for q in selected if q not in HANDLERS]
    if unknown:
        raise ValueError(f"Unknown queue(s): {', '.join(unknown)}")
    return selected


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)


async def run_media_worker(
    services: Services,
    *,
    stop: asyncio.Event,
    queues: Iterable[str] | None = None,
    with_maintenance: bool = True,
) -> None:
    """Run consumer pools for ``queues`` until ``stop`` is set, then drain in-flight jobs."""
    selected = _resolve_queues(queues)
    worker_id = _worker_id()
    concurrency = services.settings.queue_concurrency

    tasks: list[asyncio.Task[object]] = []
    for queue in selected:
        for _ in range(max(1, int(concurrency.get(queue, 1)))):
            tasks.append(asyncio.create_task(consume(services, queue, HANDLERS[queue], stop)))
    tasks.append(asyncio.create_task(_heartbeat_loop(services, stop, worker_id=worker_id, queues=selected)))
    if with_maintenance:
        tasks.append(
            asyncio.create_task(
                run_as_leader(
                    services.engine,
                    name=MAINTENANCE_LOCK_NAME,
                    stop=stop,
                    work=lambda ev: maintenance_loop(services, ev),
                )
            )
        )

    logger.info("media_worker_started", extra={"worker_id": worker_id, "queues": selected, "tasks": len(tasks)})
    try:
        results = await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        stop.set()
        for task in tasks:
            task.cancel()
        raise
    for result in results:
        if isinstance(result, BaseException):
            logger.error("media_worker_task_crashed", exc_info=result)
    logger.info("media_worker_stopped", extra={"worker_id": worker_id})


async def serve(settings: Settings, *, queues: Iterable[str] | None = None, with_maintenance: bool = True) -> None:
    validate_worker_settings(settings)
    selected = _resolve_queues(queues)
    if any(q.endswith(("-processing", "-thumbnail")) for q in selected):
        ensure_binaries(settings)

    services = Services.create(settings)
    stop = asyncio.Event()
    install_signal_handlers(stop)
    try:
        await run_media_worker(services, stop=stop, queues=selected, with_maintenance=with_maintenance)
    finally:
        await services.close()


def main() -> None:  # pragma: no cover
    settings = get_settings()
    configure_logging(settings.log_json)
    init_sentry(settings, queues=ALL_QUEUES)
    asyncio.run(serve(settings))


if __name__ == "__main__":  # pragma: no cover
    main()
