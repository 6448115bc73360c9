from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetflow.core.errors import ValidationError
from assetflow.models.asset import AssetMetadata
from assetflow.schemas.media import VariantInfo

logger = logging.getLogger(__name__)

MERGE_SCHEMA_VERSION = 1

VariantKind = Literal["original", "resolution", "thumbnail", "thumbnails"]

_RESOLUTION_RE = re.compile(r"^\d{2,5}p$")


def variant_kind(variant_name: str) -> VariantKind:
    name = (variant_name or "").strip()
    if name in {"original", "thumbnail", "thumbnails"}:
        return name  # type: ignore[return-value]
    if _RESOLUTION_RE.match(name):
        return "resolution"
    raise ValidationError(f"Unknown variant name: {variant_name!r}", variant_name=variant_name)


def _copy_document(document: dict[str, Any] | None) -> dict[str, Any]:
    copied: dict[str, Any] = {}
    for name, entry in (document or {}).items():
        if isinstance(entry, list):
            copied[name] = [dict(item) for item in entry if isinstance(item, dict)]
        elif isinstance(entry, dict):
            copied[name] = dict(entry)
    return copied


def merge_variant(
    document: dict[str, Any] | None,
    variant_name: str,
    value: VariantInfo | dict[str, Any],
    *,
    schema_version: int = MERGE_SCHEMA_VERSION,
) -> dict[str, Any]:
    """Return a new variant document with ``value`` merged under ``variant_name``.

    ``thumbnails`` is the only repeatable variant: each merge appends one entry.
    Every other variant overwrites its slot, so merges of distinct names commute.
    The input document is never mutated.
    """
    if schema_version != MERGE_SCHEMA_VERSION:
        raise ValueError(f"Unsupported variant document schema version: {schema_version}")
    kind = variant_kind(variant_name)
    entry = VariantInfo.model_validate(value).model_dump(mode="json", exclude_none=True)
    merged = _copy_document(document)
    if kind == "thumbnails":
        existing = merged.get(variant_name)
        items = existing if isinstance(existing, list) else ([existing] if existing else [])
        items.append(entry)
        merged[variant_name] = items
    else:
        merged[variant_name] = entry
    return merged


def parse_document(document: dict[str, Any] | None) -> dict[str, VariantInfo | list[VariantInfo]]:
    parsed: dict[str, VariantInfo | list[VariantInfo]] = {}
    for name, entry in (document or {}).items():
        if isinstance(entry, list):
            parsed[name] = [VariantInfo.model_validate(item) for item in entry]
        elif isinstance(entry, dict):
            parsed[name] = VariantInfo.model_validate(entry)
    return parsed


class MetadataStore:
    """Per-asset variant documents with serialized read-merge-write.

    Writers for the same (asset_id, family_key) queue on an in-process lock and,
    on PostgreSQL, on a row lock taken with ``SELECT ... FOR UPDATE`` inside the
    write transaction, so concurrent workers never drop each other's variants.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks: dict[tuple[UUID, str], asyncio.Lock] = {}
        self._waiters: dict[tuple[UUID, str], int] = {}

    @asynccontextmanager
    async def _writer_slot(self, asset_id: UUID, family_key: str) -> AsyncIterator[None]:
        """Hold the per-document lock; the entry is dropped once no writer needs it."""
        key = (asset_id, family_key)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    async def _merge_once(
        self, asset_id: UUID, family_key: str, variant_name: str, value: VariantInfo | dict[str, Any]
    ) -> dict[str, Any]:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.scalar(
                    select(AssetMetadata)
                    .where(AssetMetadata.asset_id == asset_id, AssetMetadata.key == family_key)
                    .with_for_update()
                )
                merged = merge_variant(row.value if row is not None else None, variant_name, value)
                if row is None:
                    session.add(
                        AssetMetadata(
                            asset_id=asset_id,
                            key=family_key,
                            value=merged,
                            schema_version=MERGE_SCHEMA_VERSION,
                        )
                    )
                else:
                    row.value = merged
                    row.schema_version = MERGE_SCHEMA_VERSION
            return merged

    async def upsert(
        self,
        asset_id: UUID,
        family_key: str,
        variant_name: str,
        value: VariantInfo | dict[str, Any],
    ) -> dict[str, Any]:
        async with self._writer_slot(asset_id, family_key):
            try:
                merged = await self._merge_once(asset_id, family_key, variant_name, value)
            except IntegrityError:
                # Another process inserted the first row; merge into the committed one.
                logger.info(
                    "metadata_first_insert_conflict",
                    extra={"asset_id": str(asset_id), "family_key": family_key, "variant_name": variant_name},
                )
                merged = await self._merge_once(asset_id, family_key, variant_name, value)
        logger.info(
            "metadata_variant_merged",
            extra={"asset_id": str(asset_id), "family_key": family_key, "variant_name": variant_name},
        )
        return merged

    async def get_document(self, asset_id: UUID, family_key: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(AssetMetadata).where(AssetMetadata.asset_id == asset_id, AssetMetadata.key == family_key)
            )
            return dict(row.value) if row is not None else None

    async def documents_for(self, asset_id: UUID) -> dict[str, dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (await session.execute(select(AssetMetadata).where(AssetMetadata.asset_id == asset_id))).scalars().all()
        return {row.key: dict(row.value or {}) for row in rows}
