from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from assetflow.core.config import Settings
from assetflow.core.redis_client import close_redis, create_redis
from assetflow.db.session import create_engine, create_session_factory
from assetflow.services.blob_store import BlobStore
from assetflow.services.job_ledger import JobLedger
from assetflow.services.media_probe import MediaProber
from assetflow.services.metadata_store import MetadataStore
from assetflow.services.queue_fabric import QueueFabric
from assetflow.services.transcoder import Transcoder
from assetflow.services.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators, built once at start-up and closed on shutdown."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    redis: Any
    blob_store: BlobStore
    http: httpx.AsyncClient
    queue: QueueFabric
    ledger: JobLedger
    metadata: MetadataStore
    workspace: Workspace
    prober: MediaProber
    transcoder: Transcoder

    @classmethod
    def create(cls, settings: Settings) -> "Services":
        engine = create_engine(settings.database_url)
        session_factory = create_session_factory(engine)
        redis = create_redis(settings.redis_url)
        timeout = float(settings.job_timeout_seconds.get("upload", 900))
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            redis=redis,
            blob_store=BlobStore.from_settings(settings),
            http=httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)),
            queue=QueueFabric.from_settings(redis, settings),
            ledger=JobLedger(session_factory),
            metadata=MetadataStore(session_factory),
            workspace=Workspace.from_settings(redis, settings),
            prober=MediaProber.from_settings(settings),
            transcoder=Transcoder.from_settings(settings),
        )

    async def close(self) -> None:
        try:
            await self.http.aclose()
        except Exception:
            logger.exception("Failed to close HTTP client")
        await close_redis(self.redis)
        await self.engine.dispose()
