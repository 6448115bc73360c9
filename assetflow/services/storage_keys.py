"""Object key conventions.

Originals live at ``assets/{asset_id}/{filename}``; derived artifacts sit beside them
with the variant suffixed onto the stem, so any variant key can be rebuilt from the
original key alone.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from uuid import UUID


def safe_filename(filename: str | None) -> str:
    base = PurePosixPath((filename or "").replace("\\", "/")).name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", base).strip("-.")
    return cleaned[:200] or "upload.bin"


def original_key(asset_id: UUID, filename: str) -> str:
    return f"assets/{asset_id}/{safe_filename(filename)}"


def derived_key(original: str, suffix: str, extension: str) -> str:
    path = PurePosixPath(original)
    return str(path.with_name(f"{path.stem}-{suffix}{extension}"))


def resolution_key(original: str, height: int) -> str:
    return derived_key(original, f"{int(height)}p", ".mp4")


def thumbnail_key(original: str) -> str:
    return derived_key(original, "thumbnail", ".jpg")
