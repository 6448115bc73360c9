from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from assetflow.models.asset import MediaKind
from assetflow.schemas.media import (
    LocalFileToken,
    ProcessingJobPayload,
    ThumbnailJobPayload,
    UploadJobPayload,
)
from assetflow.schemas.queue import QueueJob
from assetflow.services.dispatch import dispatch
from assetflow.services.queue_fabric import topology
from assetflow.services.storage_keys import resolution_key, thumbnail_key
from assetflow.workers.common import (
    VIDEO_FAMILY,
    download_original,
    finish_thumbnail_source,
    thumbnail_source,
    upload_local_file,
)

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)

_TRANSCODE_HOLDER = "transcode"
_THUMBNAIL_HOLDER = "thumbnail"


async def process_video(services: "Services", job: QueueJob) -> None:
    """Probe the original, hand it to the thumbnail stage and fan out one upload per resolution.

    Resolutions run in descending order. A failure part-way leaves the uploads
    already enqueued in place; the job itself fails and is retried by the fabric.
    """
    payload = ProcessingJobPayload.model_validate(job.data)
    queues = topology(MediaKind.video)
    asset_id = payload.asset_id
    logger.info("video_processing_started", extra={"asset_id": str(asset_id), "key": payload.storage_path})

    local = await download_original(services, job, payload.storage_path, asset_id)
    own_token, thumb_token = await services.workspace.share(local, holders=[_TRANSCODE_HOLDER, _THUMBNAIL_HOLDER])
    thumbnail_dispatched = False
    try:
        probe = await services.prober.probe_video(local)
        await services.metadata.upsert(asset_id, VIDEO_FAMILY, "original", probe.to_variant(payload.storage_path))

        await dispatch(
            services,
            queue=queues.thumbnail,
            name="video-thumbnail",
            payload=ThumbnailJobPayload(asset_id=asset_id, storage_path=payload.storage_path, source=thumb_token),
            asset_id=asset_id,
        )
        thumbnail_dispatched = True

        for height in sorted({int(h) for h in services.settings.video_resolutions}, reverse=True):
            variant_name = f"{height}p"
            rendered = services.workspace.path_for(asset_id, job.id, f"attempt{job.attempt}-{variant_name}.mp4")
            await services.transcoder.transcode_to_height(local, rendered, height)
            rendered_probe = await services.prober.probe_video(rendered)

            destination = resolution_key(payload.storage_path, height)
            variant = rendered_probe.to_variant(destination, state="pending")
            # Record the pending variant before the upload job can mark it ready.
            await services.metadata.upsert(asset_id, VIDEO_FAMILY, variant_name, variant)
            url = await services.blob_store.presign_upload(destination)
            await dispatch(
                services,
                queue=queues.upload,
                name=f"upload-{variant_name}",
                payload=UploadJobPayload(
                    asset_id=asset_id,
                    family_key=VIDEO_FAMILY,
                    variant_name=variant_name,
                    destination_key=destination,
                    presigned_url=url,
                    content_type="video/mp4",
                    source=LocalFileToken(path=str(rendered)),
                    variant=variant,
                ),
                asset_id=asset_id,
            )
            logger.info(
                "video_resolution_enqueued",
                extra={"asset_id": str(asset_id), "variant_name": variant_name, "key": destination},
            )
    finally:
        if not thumbnail_dispatched:
            # No thumbnail job will ever release its hold on the original.
            await services.workspace.release(thumb_token)
        last = await services.workspace.release(own_token)
        logger.info("video_original_released", extra={"asset_id": str(asset_id), "last_consumer": last})


async def make_video_thumbnail(services: "Services", job: QueueJob) -> None:
    payload = ThumbnailJobPayload.model_validate(job.data)
    asset_id = payload.asset_id
    source, refetched = await thumbnail_source(services, job, payload)

    probe = await services.prober.probe_video(source)
    midpoint = (probe.duration or 0.0) / 2.0
    frame = services.workspace.path_for(asset_id, job.id, "thumbnail.jpg")
    await services.transcoder.extract_frame(source, frame, at_seconds=midpoint, width=services.settings.thumbnail_width)
    frame_probe = await services.prober.probe_image(frame)

    key = thumbnail_key(payload.storage_path)
    await upload_local_file(services, frame, key, content_type="image/jpeg")
    await services.metadata.upsert(asset_id, VIDEO_FAMILY, "thumbnail", frame_probe.to_variant(key))
    services.workspace.remove(frame)
    await finish_thumbnail_source(services, source, refetched, payload.source)
    logger.info("video_thumbnail_completed", extra={"asset_id": str(asset_id), "key": key, "at_seconds": midpoint})
