from assetflow.db.base import Base  # noqa: F401
from assetflow.models.asset import (
    Asset,
    AssetMetadata,
    AssetStatus,
    JobStatus,
    MediaKind,
    TranscodingJob,
)  # noqa: F401

__all__ = [
    "Base",
    "Asset",
    "AssetMetadata",
    "AssetStatus",
    "JobStatus",
    "MediaKind",
    "TranscodingJob",
]
