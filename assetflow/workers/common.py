from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from assetflow.schemas.media import LocalFileToken, ThumbnailJobPayload
from assetflow.schemas.queue import QueueJob
from assetflow.services.blob_store import put_file_to_presigned_url
from assetflow.services.storage_keys import safe_filename

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)

VIDEO_FAMILY = "video_variants"
IMAGE_FAMILY = "image_variants"


async def download_original(services: "Services", job: QueueJob, storage_path: str, asset_id: object) -> Path:
    """Fetch the original into this job's workspace; the attempt number keeps retries apart."""
    name = safe_filename(Path(storage_path).name)
    local = services.workspace.path_for(str(asset_id), job.id, f"attempt{job.attempt}-{name}")
    await services.blob_store.download_to_file(storage_path, local)
    logger.info("original_downloaded", extra={"key": storage_path, "path": str(local)})
    return local


async def thumbnail_source(services: "Services", job: QueueJob, payload: ThumbnailJobPayload) -> tuple[Path, bool]:
    """Return the local original to render from and whether it is a private re-fetch.

    A redelivered thumbnail job may find the handed-over file already cleaned up;
    it then downloads its own copy instead of failing.
    """
    handed_over = Path(payload.source.path)
    if handed_over.exists():
        return handed_over, False
    logger.info("thumbnail_source_refetched", extra={"path": payload.source.path})
    return await download_original(services, job, payload.storage_path, payload.asset_id), True


async def finish_thumbnail_source(services: "Services", source: Path, refetched: bool, token: LocalFileToken) -> None:
    if refetched:
        services.workspace.remove(source)
        return
    await services.workspace.release(token)


async def upload_local_file(services: "Services", path: Path, key: str, *, content_type: str) -> int:
    url = await services.blob_store.presign_upload(key)
    size = await put_file_to_presigned_url(services.http, url, path, content_type=content_type)
    logger.info("artifact_uploaded", extra={"key": key, "bytes": size})
    return size
