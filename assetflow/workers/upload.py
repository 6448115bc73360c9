from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from assetflow.core.errors import UploadFailure
from assetflow.schemas.media import UploadJobPayload
from assetflow.schemas.queue import QueueJob
from assetflow.services.blob_store import put_file_to_presigned_url

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)


async def upload_variant(services: "Services", job: QueueJob) -> None:
    """PUT a rendered variant to its presigned URL and mark it ready.

    The local file is deleted only after a successful upload; on failure it stays
    in the workspace for inspection until the stale sweep removes it.
    """
    payload = UploadJobPayload.model_validate(job.data)
    path = Path(payload.source.path)
    ready = payload.variant.model_copy(update={"state": "ready", "path": payload.destination_key})

    if not path.exists():
        # A redelivery after a successful PUT finds the file gone but the object present.
        if job.attempt > 1 and await services.blob_store.exists(payload.destination_key):
            await services.metadata.upsert(payload.asset_id, payload.family_key, payload.variant_name, ready)
            logger.info("variant_upload_already_present", extra={"key": payload.destination_key})
            return
        raise UploadFailure(f"Local file for {payload.variant_name} is missing", path=str(path))

    url = payload.presigned_url
    if job.attempt > 1:
        # The original URL may have expired while the job waited out its backoff.
        url = await services.blob_store.presign_upload(payload.destination_key)

    size = await put_file_to_presigned_url(services.http, url, path, content_type=payload.content_type)
    await services.metadata.upsert(payload.asset_id, payload.family_key, payload.variant_name, ready)
    await services.workspace.release(payload.source)
    logger.info(
        "variant_uploaded",
        extra={
            "asset_id": str(payload.asset_id),
            "variant_name": payload.variant_name,
            "key": payload.destination_key,
            "bytes": size,
        },
    )
