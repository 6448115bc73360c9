"""Asset lifecycle: presigned ingestion, completion and read-side helpers.

Legal transitions are START -> COMPLETED (object confirmed in the blob store) and
START -> FAILED (upload abandoned). COMPLETED and FAILED are terminal; derivation
failures are tracked in the job ledger and never change the asset itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from assetflow.core import metrics
from assetflow.core.errors import (
    AlreadyCompleted,
    AssetNotFound,
    IllegalTransition,
    NotAssetOwner,
    ObjectNotFound,
    ValidationError,
)
from assetflow.models.asset import Asset, AssetStatus, MediaKind
from assetflow.schemas.media import (
    AssetMetricsResponse,
    PresignedUploadRead,
    ProcessingJobPayload,
    VariantDownloadRead,
)
from assetflow.services.dispatch import dispatch
from assetflow.services.metadata_store import parse_document
from assetflow.services.queue_fabric import queues_for
from assetflow.services.storage_keys import original_key

if TYPE_CHECKING:
    from assetflow.core.container import Services

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.START: frozenset({AssetStatus.COMPLETED, AssetStatus.FAILED}),
    AssetStatus.COMPLETED: frozenset(),
    AssetStatus.FAILED: frozenset(),
}

_MAX_FILENAME_LENGTH = 255


@dataclass(slots=True)
class AssetMetricsFilters:
    owner_id: UUID | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: AssetStatus, target: AssetStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def ensure_transition(current: AssetStatus, target: AssetStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(f"Asset cannot move from {current.value} to {target.value}")


def classify_media_kind(mime_type: str | None) -> MediaKind:
    major = (mime_type or "").strip().lower().split("/", 1)[0]
    if major == "video":
        return MediaKind.video
    if major == "image":
        return MediaKind.image
    return MediaKind.other


def _validate_upload_request(filename: str, mime_type: str, size_bytes: int) -> tuple[str, str]:
    cleaned_name = (filename or "").strip()
    if not cleaned_name or len(cleaned_name) > _MAX_FILENAME_LENGTH:
        raise ValidationError("filename must be between 1 and 255 characters", filename=filename)
    if "/" in cleaned_name or "\\" in cleaned_name:
        raise ValidationError("filename must not contain path separators", filename=filename)
    cleaned_mime = (mime_type or "").strip().lower()
    if "/" not in cleaned_mime:
        raise ValidationError("mime_type must look like 'type/subtype'", mime_type=mime_type)
    if int(size_bytes or 0) <= 0:
        raise ValidationError("size_bytes must be positive", size_bytes=size_bytes)
    return cleaned_name, cleaned_mime


async def _find_open_upload(session: AsyncSession, owner_id: UUID, filename: str) -> Asset | None:
    return await session.scalar(
        select(Asset).where(Asset.owner_id == owner_id, Asset.filename == filename, Asset.status == AssetStatus.START)
    )


async def create_or_reuse_asset(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    owner_id: UUID,
    filename: str,
    mime_type: str,
    size_bytes: int,
) -> tuple[Asset, bool]:
    """Return the owner's open START asset for ``filename``, creating it if needed.

    The second element is True when an existing row was reused. Two concurrent
    callers converge on one row: the partial unique index rejects the slower insert,
    which then re-reads the winner.
    """
    async with session_factory() as session:
        existing = await _find_open_upload(session, owner_id, filename)
        if existing is not None:
            return existing, True

        asset_id = uuid4()
        asset = Asset(
            asset_id=asset_id,
            filename=filename,
            mime_type=mime_type,
            storage_path=original_key(asset_id, filename),
            owner_id=owner_id,
            size_bytes=int(size_bytes),
            status=AssetStatus.START,
        )
        session.add(asset)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            winner = await _find_open_upload(session, owner_id, filename)
            if winner is None:
                raise
            logger.info("asset_create_race_reused", extra={"asset_id": str(winner.asset_id), "owner_id": str(owner_id)})
            return winner, True
        return asset, False


async def request_upload(
    services: "Services",
    *,
    owner_id: UUID,
    filename: str,
    mime_type: str,
    size_bytes: int,
) -> PresignedUploadRead:
    cleaned_name, cleaned_mime = _validate_upload_request(filename, mime_type, size_bytes)
    asset, reused = await create_or_reuse_asset(
        services.session_factory,
        owner_id=owner_id,
        filename=cleaned_name,
        mime_type=cleaned_mime,
        size_bytes=size_bytes,
    )
    url = await services.blob_store.presign_upload(asset.storage_path)
    logger.info(
        "upload_presigned",
        extra={"asset_id": str(asset.asset_id), "owner_id": str(owner_id), "reused": reused},
    )
    return PresignedUploadRead(url=url, asset_id=asset.asset_id, reused=reused)


async def complete_upload(services: "Services", *, asset_id: UUID, caller_id: UUID) -> Asset:
    """Confirm the uploaded object and move the asset START -> COMPLETED.

    Exactly one caller wins the transition; only the winner enqueues the
    processing job, and only for video and image assets.
    """
    async with services.session_factory() as session:
        asset = await session.get(Asset, asset_id)
        if asset is None:
            raise AssetNotFound(f"Asset {asset_id} not found", asset_id=str(asset_id))
        if asset.owner_id != caller_id:
            raise NotAssetOwner("Only the uploader can complete this asset", asset_id=str(asset_id))
        if asset.status == AssetStatus.COMPLETED:
            raise AlreadyCompleted("Asset upload already completed", asset_id=str(asset_id))
        ensure_transition(asset.status, AssetStatus.COMPLETED)
        if not await services.blob_store.exists(asset.storage_path):
            raise ObjectNotFound("Uploaded object not found in storage", asset_id=str(asset_id), key=asset.storage_path)

        result = await session.execute(
            update(Asset)
            .where(Asset.asset_id == asset_id, Asset.status == AssetStatus.START)
            .values(status=AssetStatus.COMPLETED, completed_at=_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise AlreadyCompleted("Asset upload already completed", asset_id=str(asset_id))
        await session.commit()
        await session.refresh(asset)

    metrics.record_upload_completed()
    kind = classify_media_kind(asset.mime_type)
    queues = queues_for(kind)
    if queues is None:
        logger.info("asset_completed_without_derivation", extra={"asset_id": str(asset_id), "mime_type": asset.mime_type})
        return asset

    await dispatch(
        services,
        queue=queues.processing,
        name=f"{kind.value}-processing",
        payload=ProcessingJobPayload(asset_id=asset.asset_id, storage_path=asset.storage_path, mime_type=asset.mime_type),
        asset_id=asset.asset_id,
    )
    logger.info("asset_completed", extra={"asset_id": str(asset_id), "media_kind": kind.value})
    return asset


async def expire_stale_uploads(
    session_factory: async_sessionmaker[AsyncSession], *, older_than_seconds: int, now: datetime | None = None
) -> int:
    """Mark START assets created before the cutoff as FAILED; returns the number expired."""
    cutoff = (now or _now()) - timedelta(seconds=max(0, int(older_than_seconds)))
    async with session_factory() as session:
        result = await session.execute(
            update(Asset)
            .where(Asset.status == AssetStatus.START, Asset.created_at < cutoff)
            .values(status=AssetStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    expired = int(result.rowcount or 0)
    if expired:
        logger.info("stale_uploads_expired", extra={"count": expired, "cutoff": cutoff.isoformat()})
    return expired


async def presign_variant_downloads(services: "Services", asset_id: UUID) -> list[VariantDownloadRead]:
    """Presign GET URLs for every ready variant recorded for the asset."""
    documents = await services.metadata.documents_for(asset_id)
    downloads: list[VariantDownloadRead] = []
    for family_key in sorted(documents):
        for name, entry in parse_document(documents[family_key]).items():
            entries = entry if isinstance(entry, list) else [entry]
            for idx, variant in enumerate(entries):
                if variant.state != "ready":
                    continue
                label = f"{name}[{idx}]" if isinstance(entry, list) else name
                downloads.append(
                    VariantDownloadRead(
                        variant_name=label,
                        path=variant.path,
                        url=await services.blob_store.presign_download(variant.path),
                        width=variant.width,
                        height=variant.height,
                        size=variant.size,
                    )
                )
    return downloads


async def get_asset_metrics(services: "Services", filters: AssetMetricsFilters | None = None) -> AssetMetricsResponse:
    filters = filters or AssetMetricsFilters()
    clauses: list[ColumnElement[bool]] = []
    if filters.owner_id:
        clauses.append(Asset.owner_id == filters.owner_id)
    if filters.created_from:
        clauses.append(Asset.created_at >= filters.created_from)
    if filters.created_to:
        clauses.append(Asset.created_at <= filters.created_to)
    where = and_(*clauses) if clauses else None

    status_stmt = select(Asset.status, func.count(), func.coalesce(func.sum(Asset.size_bytes), 0)).group_by(Asset.status)
    mime_stmt = select(Asset.mime_type, func.count()).group_by(Asset.mime_type)
    if where is not None:
        status_stmt = status_stmt.where(where)
        mime_stmt = mime_stmt.where(where)

    async with services.session_factory() as session:
        status_rows = (await session.execute(status_stmt)).all()
        mime_rows = (await session.execute(mime_stmt)).all()

    status_counts: dict[str, int] = {}
    total_bytes = 0
    for status, count, size in status_rows:
        status_counts[status.value] = int(count or 0)
        total_bytes += int(size or 0)

    kind_counts: dict[str, int] = {}
    for mime_type, count in mime_rows:
        kind = classify_media_kind(mime_type).value
        kind_counts[kind] = kind_counts.get(kind, 0) + int(count or 0)

    asset_scope = select(Asset.asset_id).where(where) if where is not None else None
    return AssetMetricsResponse(
        total_assets=sum(status_counts.values()),
        total_bytes=total_bytes,
        status_counts=status_counts,
        kind_counts=kind_counts,
        job_status_counts=await services.ledger.count_by("status", asset_ids=asset_scope),
        job_worker_counts=await services.ledger.count_by("worker_name", asset_ids=asset_scope),
        queues=await services.queue.all_stats(),
    )
