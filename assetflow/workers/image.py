from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from assetflow.models.asset import MediaKind
from assetflow.schemas.media import LocalFileToken, ProcessingJobPayload, ThumbnailJobPayload, VariantInfo
from assetflow.schemas.queue import QueueJob
from assetflow.services.dispatch import dispatch
from assetflow.services.queue_fabric import topology
from assetflow.services.storage_keys import thumbnail_key
from assetflow.workers.common import (
    IMAGE_FAMILY,
    download_original,
    finish_thumbnail_source,
    thumbnail_source,
    upload_local_file,
)

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)


async def process_image(services: "Services", job: QueueJob) -> None:
    """Record the original's dimensions and hand the local file to the thumbnail stage.

    Resizing happens entirely in the thumbnail stage, which becomes the sole owner
    of the downloaded file.
    """
    payload = ProcessingJobPayload.model_validate(job.data)
    queues = topology(MediaKind.image)
    asset_id = payload.asset_id

    local = await download_original(services, job, payload.storage_path, asset_id)
    try:
        probe = await services.prober.probe_image(local)
        await services.metadata.upsert(asset_id, IMAGE_FAMILY, "original", probe.to_variant(payload.storage_path))
        await dispatch(
            services,
            queue=queues.thumbnail,
            name="image-thumbnail",
            payload=ThumbnailJobPayload(
                asset_id=asset_id,
                storage_path=payload.storage_path,
                source=LocalFileToken(path=str(local)),
            ),
            asset_id=asset_id,
        )
    except Exception:
        services.workspace.remove(local)
        raise
    logger.info("image_processing_completed", extra={"asset_id": str(asset_id), "width": probe.width, "height": probe.height})


async def make_image_thumbnail(services: "Services", job: QueueJob) -> None:
    payload = ThumbnailJobPayload.model_validate(job.data)
    asset_id = payload.asset_id
    source, refetched = await thumbnail_source(services, job, payload)

    rendered = services.workspace.path_for(asset_id, job.id, "thumbnail.jpg")
    width, height = await services.transcoder.resize_image(source, rendered, width=services.settings.thumbnail_width)
    size = rendered.stat().st_size

    key = thumbnail_key(payload.storage_path)
    await upload_local_file(services, rendered, key, content_type="image/jpeg")
    await services.metadata.upsert(
        asset_id,
        IMAGE_FAMILY,
        "thumbnails",
        VariantInfo(path=key, width=width, height=height, size=size),
    )
    services.workspace.remove(rendered)
    await finish_thumbnail_source(services, source, refetched, payload.source)
    logger.info("image_thumbnail_completed", extra={"asset_id": str(asset_id), "key": key})
