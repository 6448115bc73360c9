from __future__ import annotations

import logging
import shutil
import time
from contextlib import suppress
from pathlib import Path
from typing import Any
from uuid import UUID

import anyio

from assetflow.core.config import Settings
from assetflow.core.redis_client import await_if_needed
from assetflow.schemas.media import LocalFileToken

logger = logging.getLogger(__name__)


class Workspace:
    """Local scratch space for pipeline stages.

    Files live under ``{root}/{asset_id}/{job_id}/``. A file handed to more than one
    job is shared through a Redis set of named holders; every holder calls ``release``
    and only the last one deletes the file.
    """

    def __init__(
        self,
        root: str | Path,
        redis: Any,
        *,
        key_prefix: str = "assetflow:workspace:refs",
        refcount_ttl_seconds: int = 86400,
    ) -> None:
        self.root = Path(root)
        self.redis = redis
        self.key_prefix = key_prefix.rstrip(":")
        self.refcount_ttl_seconds = max(60, int(refcount_ttl_seconds))

    @classmethod
    def from_settings(cls, redis: Any, settings: Settings) -> "Workspace":
        return cls(settings.workspace_root, redis, refcount_ttl_seconds=settings.workspace_stale_seconds)

    def job_dir(self, asset_id: UUID | str, job_id: str) -> Path:
        return self.root / str(asset_id) / str(job_id)

    def path_for(self, asset_id: UUID | str, job_id: str, filename: str) -> Path:
        directory = self.job_dir(asset_id, job_id)
        directory.mkdir(parents=True, exist_ok=True)
        return directory / filename

    def _ref_key(self, path: str) -> str:
        return f"{self.key_prefix}:{path}"

    async def share(self, path: Path, *, holders: list[str]) -> list[LocalFileToken]:
        """Register named holders of ``path`` and return one shared token per holder."""
        names = [str(name) for name in holders if str(name or "").strip()]
        if not names:
            raise ValueError("share() needs at least one holder")
        key = self._ref_key(str(path))
        await await_if_needed(self.redis.sadd(key, *names))
        await await_if_needed(self.redis.expire(key, self.refcount_ttl_seconds))
        return [LocalFileToken(path=str(path), shared=True, holder=name) for name in names]

    async def release(self, token: LocalFileToken) -> bool:
        """Drop ``token``'s hold and return True if it was the last consumer.

        Releasing the same holder twice is a no-op for the other holders.
        """
        if token.shared:
            key = self._ref_key(token.path)
            await await_if_needed(self.redis.srem(key, token.holder or ""))
            remaining = int(await await_if_needed(self.redis.scard(key)) or 0)
            if remaining > 0:
                return False
            await await_if_needed(self.redis.delete(key))
        self.remove(Path(token.path))
        logger.info("workspace_file_released", extra={"path": token.path, "holder": token.holder})
        return True

    def remove(self, path: Path) -> None:
        with suppress(FileNotFoundError):
            path.unlink()
        # Prune the job and asset directories once they are empty.
        for parent in (path.parent, path.parent.parent):
            if parent == self.root or self.root not in parent.parents:
                break
            try:
                parent.rmdir()
            except OSError:
                break

    def _sweep(self, cutoff: float) -> int:
        removed = 0
        if not self.root.exists():
            return 0
        for asset_dir in self.root.iterdir():
            if not asset_dir.is_dir():
                continue
            for job_dir in asset_dir.iterdir():
                try:
                    stale = job_dir.stat().st_mtime < cutoff
                except FileNotFoundError:
                    continue
                if stale:
                    shutil.rmtree(job_dir, ignore_errors=True)
                    removed += 1
            with suppress(OSError):
                asset_dir.rmdir()
        return removed

    async def sweep_stale(self, max_age_seconds: int, *, now: float | None = None) -> int:
        """Delete job directories untouched for ``max_age_seconds`` (e.g. left by dead-lettered jobs)."""
        cutoff = (now if now is not None else time.time()) - max(0, int(max_age_seconds))
        removed = await anyio.to_thread.run_sync(self._sweep, cutoff)
        if removed:
            logger.info("workspace_swept", extra={"removed_dirs": removed, "root": str(self.root)})
        return removed
