from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


JobStatusLiteral = Literal["PENDING", "ACTIVE", "COMPLETED", "FAILED"]
VariantStateLiteral = Literal["pending", "ready"]
FamilyKeyLiteral = Literal["video_variants", "image_variants"]


class VariantInfo(BaseModel):
    """One rendition of an asset as recorded in its variant document."""

    model_config = ConfigDict(extra="ignore")

    path: str
    width: int = 0
    height: int = 0
    size: int = 0
    duration: float | None = None
    # pending: rendered locally, upload queued; ready: present in the blob store
    state: VariantStateLiteral = "ready"


class LocalFileToken(BaseModel):
    """Ownership token for a local file handed from one pipeline stage to the next.

    ``shared`` files are held by several named holders tracked in the workspace;
    the holder that releases last deletes the file. Unshared files belong solely to
    the job that carries them.
    """

    path: str
    shared: bool = False
    holder: str | None = None


class ProcessingJobPayload(BaseModel):
    asset_id: UUID
    storage_path: str
    mime_type: str | None = None


class ThumbnailJobPayload(BaseModel):
    asset_id: UUID
    storage_path: str
    source: LocalFileToken


class UploadJobPayload(BaseModel):
    asset_id: UUID
    family_key: FamilyKeyLiteral
    variant_name: str
    destination_key: str
    presigned_url: str
    content_type: str
    source: LocalFileToken
    variant: VariantInfo


class PresignedUploadRead(BaseModel):
    url: str
    asset_id: UUID
    reused: bool = False


class VariantDownloadRead(BaseModel):
    variant_name: str
    path: str
    url: str
    width: int = 0
    height: int = 0
    size: int = 0


class TranscodingJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    asset_id: UUID
    worker_name: str
    status: JobStatusLiteral
    event_name: str
    attempt: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value: object) -> object:
        return getattr(value, "value", value)


class TranscodingJobListResponse(BaseModel):
    items: list[TranscodingJobRead]
    meta: dict[str, int]


class QueueStatsRead(BaseModel):
    queue: str
    ready: int = 0
    active: int = 0
    delayed: int = 0
    dead: int = 0


class AssetMetricsResponse(BaseModel):
    total_assets: int = 0
    total_bytes: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    kind_counts: dict[str, int] = Field(default_factory=dict)
    job_status_counts: dict[str, int] = Field(default_factory=dict)
    job_worker_counts: dict[str, int] = Field(default_factory=dict)
    queues: list[QueueStatsRead] = Field(default_factory=list)
