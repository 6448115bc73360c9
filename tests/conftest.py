import asyncio
import os
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import httpx
import pytest
from PIL import Image
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from assetflow.core import metrics
from assetflow.core.config import Settings
from assetflow.core.container import Services
from assetflow.core.errors import TranscodeFailure
from assetflow.db.session import create_session_factory
from assetflow.models import Base
from assetflow.services.job_ledger import JobLedger
from assetflow.services.media_probe import MediaProber, ProbeResult
from assetflow.services.metadata_store import MetadataStore
from assetflow.services.queue_fabric import QueueFabric
from assetflow.services.transcoder import Transcoder
from assetflow.services.workspace import Workspace


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


class RedisStub:
    """In-memory subset of the redis.asyncio commands used by the queue fabric and workspace."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.sets: dict[str, set[str]] = {}
        self.expirations: dict[str, int] = {}
        self.closed = False

    async def set(self, key, value, ex=None):
        self.strings[key] = value
        if ex:
            self.expirations[key] = int(ex)
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.lists, self.zsets, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def expire(self, key, seconds):
        self.expirations[key] = int(seconds)
        return True

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key, *fields):
        bucket = self.hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(str(v) for v in values)
        return len(self.lists[key])

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        before = len(items)
        self.lists[key] = [item for item in items if item != value]
        return before - len(self.lists[key])

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def blmove(self, source, destination, timeout, src="LEFT", dest="RIGHT"):
        items = self.lists.get(source, [])
        if not items:
            await asyncio.sleep(min(float(timeout or 0), 0.01))
            return None
        value = items.pop(0 if src == "LEFT" else -1)
        target = self.lists.setdefault(destination, [])
        if dest == "RIGHT":
            target.append(value)
        else:
            target.insert(0, value)
        return value

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update({member: float(score) for member, score in mapping.items()})
        return len(mapping)

    async def zrem(self, key, *members):
        bucket = self.zsets.get(key, {})
        return sum(1 for member in members if bucket.pop(member, None) is not None)

    async def zrangebyscore(self, key, minimum, maximum):
        low = float("-inf") if minimum == "-inf" else float(minimum)
        high = float("inf") if maximum == "+inf" else float(maximum)
        bucket = self.zsets.get(key, {})
        return [member for member, score in sorted(bucket.items(), key=lambda kv: kv[1]) if low <= score <= high]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = sum(1 for member in members if member in bucket)
        bucket.difference_update(members)
        return removed

    async def scard(self, key):
        return len(self.sets.get(key, set()))

    async def aclose(self):
        self.closed = True


class BlobStoreStub:
    """Object store double; presigned PUTs land in ``objects`` through an httpx MockTransport."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_puts: set[str] = set()
        self.presigned_uploads: list[str] = []

    async def presign_upload(self, key: str, ttl: int | None = None) -> str:
        self.presigned_uploads.append(key)
        return f"https://blob.test/put/{key}"

    async def presign_download(self, key: str, ttl: int | None = None) -> str:
        return f"https://blob.test/get/{key}"

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def get_object(self, key: str) -> bytes:
        return self.objects[key]

    async def put_object(self, key: str, data: bytes, content_type: str) -> None:
        self.objects[key] = data

    async def download_to_file(self, key: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.objects[key])
        return destination

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.removeprefix("/put/")
        if request.method != "PUT" or key in self.fail_puts:
            return httpx.Response(503, text="unavailable")
        self.objects[key] = request.content
        return httpx.Response(200)


class ProberStub(MediaProber):
    """Reports fixed video dimensions by variant suffix; images go through Pillow."""

    _HEIGHTS = {"720p": (1280, 720), "480p": (854, 480)}

    async def probe_video(self, path: Path) -> ProbeResult:
        if not path.exists():
            raise TranscodeFailure(f"missing {path.name}")
        width, height = next((dims for suffix, dims in self._HEIGHTS.items() if suffix in path.name), (1920, 1080))
        return ProbeResult(width=width, height=height, size=path.stat().st_size, duration=10.0)


class TranscoderStub(Transcoder):
    def __init__(self) -> None:
        super().__init__(ffmpeg_bin="ffmpeg", timeout=5)
        self.fail_heights: set[int] = set()
        self.transcoded: list[int] = []
        self.frames: list[float] = []

    async def transcode_to_height(self, source: Path, destination: Path, height: int) -> Path:
        if int(height) in self.fail_heights:
            raise TranscodeFailure(f"ffmpeg failed for {height}p")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(source.read_bytes()[:16] + f"-{height}p".encode())
        self.transcoded.append(int(height))
        return destination

    async def extract_frame(self, source: Path, destination: Path, *, at_seconds: float, width: int) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", (width, width * 9 // 16), color=(10, 20, 30)).save(destination, format="JPEG")
        self.frames.append(at_seconds)
        return destination


def make_png(width: int = 640, height: int = 480) -> bytes:
    import io

    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 100, 50)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def redis_stub() -> RedisStub:
    return RedisStub()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'assetflow.db'}",
        workspace_root=str(tmp_path / "workspace"),
        worker_heartbeat_file=str(tmp_path / "heartbeat.json"),
        queue_max_attempts=3,
        queue_retry_backoff_seconds=[30, 120],
        queue_poll_timeout_seconds=0.01,
        sentry_dsn="",
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncIterator[sa_asyncio.AsyncEngine]:
    db_engine = sa_asyncio.create_async_engine(settings.database_url, future=True)
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: sa_asyncio.AsyncEngine):
    return create_session_factory(engine)


@pytest.fixture
async def services(settings: Settings, engine, session_factory, redis_stub: RedisStub) -> AsyncIterator[Services]:
    blob = BlobStoreStub()
    bundle = Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis_stub,
        blob_store=blob,  # type: ignore[arg-type]
        http=httpx.AsyncClient(transport=httpx.MockTransport(blob.handle)),
        queue=QueueFabric.from_settings(redis_stub, settings),
        ledger=JobLedger(session_factory),
        metadata=MetadataStore(session_factory),
        workspace=Workspace.from_settings(redis_stub, settings),
        prober=ProberStub(),
        transcoder=TranscoderStub(),
    )
    yield bundle
    await bundle.http.aclose()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def drain():
    """Run every ready job on every queue, in queue order, until nothing is left to reserve."""
    from assetflow.services.queue_fabric import ALL_QUEUES
    from assetflow.workers import media_worker
    from assetflow.workers.pool import run_job

    async def _drain(services: Services, *, max_rounds: int = 50) -> list[tuple[str, bool]]:
        handled: list[tuple[str, bool]] = []
        for _ in range(max_rounds):
            progressed = False
            for queue in ALL_QUEUES:
                job = await services.queue.reserve(queue, timeout=0)
                if job is None:
                    continue
                progressed = True
                handled.append((job.name, await run_job(services, job, media_worker.HANDLERS[queue])))
            if not progressed:
                break
        return handled

    return _drain


@pytest.fixture
def uploaded_asset():
    """Presign, "upload" the bytes into the blob stub and complete the asset."""
    from uuid import uuid4

    from assetflow.models import Asset
    from assetflow.services import asset_state

    async def _upload(services: Services, *, filename: str, mime_type: str, content: bytes, owner_id=None):
        owner = owner_id or uuid4()
        presigned = await asset_state.request_upload(
            services, owner_id=owner, filename=filename, mime_type=mime_type, size_bytes=len(content)
        )
        async with services.session_factory() as session:
            asset = await session.get(Asset, presigned.asset_id)
        services.blob_store.objects[asset.storage_path] = content
        return await asset_state.complete_upload(services, asset_id=presigned.asset_id, caller_id=owner)

    return _upload
