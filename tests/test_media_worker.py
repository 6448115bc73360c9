import asyncio
import json
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from assetflow.core import metrics
from assetflow.core.errors import LedgerWriteFailure, TranscodeFailure
from assetflow.core.logging_config import job_id_ctx_var, queue_ctx_var
from assetflow.models import JobStatus
from assetflow.workers import media_worker, pool


async def _reserved(services, queue: str = "image-thumbnail", *, attempt: int | None = None):
    job = services.queue.new_job(queue, queue, {})
    await services.ledger.on_enqueued(job, asset_id=uuid4())
    await services.queue.push(job)
    reserved = await services.queue.reserve(queue, timeout=0)
    assert reserved is not None
    if attempt is not None:
        reserved.attempt = attempt
    return reserved


@pytest.mark.anyio
async def test_run_job_acks_and_completes_ledger_row(services) -> None:
    seen: dict[str, object] = {}

    async def _handler(_services, job):
        seen["job_id"] = job_id_ctx_var.get()
        seen["queue"] = queue_ctx_var.get()

    job = await _reserved(services)
    assert await pool.run_job(services, job, _handler) is True

    assert seen == {"job_id": job.id, "queue": "image-thumbnail"}
    assert job_id_ctx_var.get() is None
    row = await services.ledger.get(job.id)
    assert row is not None and row.status == JobStatus.COMPLETED and row.attempt == 1
    stats = await services.queue.stats("image-thumbnail")
    assert (stats.ready, stats.active, stats.delayed) == (0, 0, 0)
    assert metrics.snapshot()["jobs_completed:image-thumbnail"] == 1


@pytest.mark.anyio
async def test_run_job_failure_schedules_retry(services, caplog: pytest.LogCaptureFixture) -> None:
    async def _handler(_services, _job):
        raise TranscodeFailure("ffmpeg exploded")

    job = await _reserved(services)
    with caplog.at_level(logging.INFO):
        assert await pool.run_job(services, job, _handler) is False

    assert "job_failed" in caplog.text
    assert "job_retry_scheduled" in caplog.text
    row = await services.ledger.get(job.id)
    assert row is not None
    assert row.status == JobStatus.FAILED
    assert row.error_message == "TranscodeFailure: ffmpeg exploded"
    assert (await services.queue.stats("image-thumbnail")).delayed == 1
    assert metrics.snapshot()["jobs_failed:image-thumbnail"] == 1


@pytest.mark.anyio
async def test_run_job_dead_letters_exhausted_job(services) -> None:
    async def _handler(_services, _job):
        raise RuntimeError("still broken")

    job = await _reserved(services, attempt=services.settings.queue_max_attempts)
    assert await pool.run_job(services, job, _handler) is False

    row = await services.ledger.get(job.id)
    assert row is not None
    assert row.status == JobStatus.FAILED
    assert row.event_name == "dead_lettered"
    stats = await services.queue.stats("image-thumbnail")
    assert (stats.delayed, stats.dead) == (0, 1)
    assert metrics.snapshot()["jobs_dead_lettered:image-thumbnail"] == 1


@pytest.mark.anyio
async def test_run_job_times_out_slow_handler(services, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(services.queue, "timeout_for", lambda _queue: 0.05)

    async def _slow(_services, _job):
        await asyncio.sleep(5)

    job = await _reserved(services)
    assert await pool.run_job(services, job, _slow) is False

    row = await services.ledger.get(job.id)
    assert row is not None
    assert (row.error_message or "").startswith("JobTimeout:")


@pytest.mark.anyio
async def test_run_job_survives_ledger_outage(services, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken(*_args, **_kwargs):
        raise LedgerWriteFailure("ledger down")

    monkeypatch.setattr(services.ledger, "mark", _broken)

    async def _handler(_services, _job):
        return None

    job = await _reserved(services)
    assert await pool.run_job(services, job, _handler) is True
    assert (await services.queue.stats("image-thumbnail")).active == 0
    assert metrics.snapshot()["ledger_write_failures"] == 2


@pytest.mark.anyio
async def test_consume_finishes_in_flight_job_then_stops(services) -> None:
    stop = asyncio.Event()
    handled: list[str] = []

    async def _handler(_services, job):
        handled.append(job.id)
        stop.set()

    for _ in range(2):
        await services.queue.push(services.queue.new_job("image-upload", "upload", {}))

    assert await pool.consume(services, "image-upload", _handler, stop) == 1
    assert len(handled) == 1
    assert (await services.queue.stats("image-upload")).ready == 1


@pytest.mark.anyio
async def test_consume_backs_off_when_reserve_fails(services, monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    stop = asyncio.Event()
    calls = {"n": 0}

    async def _broken_reserve(_queue, *, timeout):
        calls["n"] += 1
        stop.set()
        raise ConnectionError("redis gone")

    monkeypatch.setattr(services.queue, "reserve", _broken_reserve)

    with caplog.at_level(logging.ERROR):
        assert await pool.consume(services, "video-upload", media_worker.HANDLERS["video-upload"], stop) == 0

    assert calls["n"] == 1
    assert "worker_reserve_failed" in caplog.text


@pytest.mark.anyio
async def test_run_maintenance_once_promotes_requeues_and_dead_letters(services, redis_stub) -> None:
    fabric = services.queue

    retry = await _reserved(services, "video-upload")
    await fabric.fail(retry, "boom")
    redis_stub.zsets["assetflow:queue:video-upload:delayed"][retry.id] = 0

    stalled = await _reserved(services, "image-processing")
    redis_stub.zsets["assetflow:queue:image-processing:leases"][stalled.id] = 0

    exhausted = await _reserved(services, "video-thumbnail", attempt=services.settings.queue_max_attempts)
    await fabric._store(exhausted)
    redis_stub.zsets["assetflow:queue:video-thumbnail:leases"][exhausted.id] = 0

    stats = await pool.run_maintenance_once(services)

    assert stats == {"promoted": 1, "requeued": 1, "dead_lettered": 1, "swept_dirs": 0}
    assert (await fabric.stats("video-upload")).ready == 1
    assert (await fabric.stats("image-processing")).ready == 1
    assert (await fabric.stats("video-thumbnail")).dead == 1
    row = await services.ledger.get(exhausted.id)
    assert row is not None and row.event_name == "dead_lettered"


@pytest.mark.anyio
async def test_publish_heartbeat_writes_redis_key_and_file(services, redis_stub) -> None:
    await media_worker._publish_heartbeat(services, worker_id="w-1", queues=["video-upload"])

    key = f"{services.settings.worker_heartbeat_prefix}:w-1"
    payload = json.loads(redis_stub.strings[key])
    assert payload["worker_id"] == "w-1"
    assert payload["queues"] == ["video-upload"]
    assert redis_stub.expirations[key] >= 10

    on_disk = json.loads(Path(services.settings.worker_heartbeat_file).read_text(encoding="utf-8"))
    assert on_disk["worker_id"] == "w-1"


def test_resolve_queues_rejects_unknown_names() -> None:
    assert media_worker._resolve_queues(None) == list(media_worker.HANDLERS)
    assert media_worker._resolve_queues([" image-upload "]) == ["image-upload"]
    with pytest.raises(ValueError):
        media_worker._resolve_queues(["audio-processing"])


@pytest.mark.anyio
async def test_run_media_worker_stops_cleanly(services, redis_stub, caplog: pytest.LogCaptureFixture) -> None:
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.1, stop.set)

    with caplog.at_level(logging.INFO):
        await asyncio.wait_for(
            media_worker.run_media_worker(services, stop=stop, queues=["image-upload"], with_maintenance=True),
            timeout=5,
        )

    assert "media_worker_started" in caplog.text
    assert "media_worker_stopped" in caplog.text
    assert "media_worker_task_crashed" not in caplog.text
    assert any(key.startswith(services.settings.worker_heartbeat_prefix) for key in redis_stub.strings)


@pytest.mark.anyio
async def test_serve_checks_tools_only_for_rendering_queues(services, monkeypatch: pytest.MonkeyPatch) -> None:
    run_mock = AsyncMock()
    binaries = MagicMock(return_value={})
    closed = AsyncMock()

    monkeypatch.setattr(media_worker, "run_media_worker", run_mock)
    monkeypatch.setattr(media_worker, "ensure_binaries", binaries)
    monkeypatch.setattr(media_worker, "install_signal_handlers", lambda _stop: None)
    monkeypatch.setattr(media_worker.Services, "create", classmethod(lambda cls, _settings: services))
    monkeypatch.setattr(services, "close", closed)

    await media_worker.serve(services.settings, queues=["video-upload", "image-upload"], with_maintenance=False)
    binaries.assert_not_called()
    assert run_mock.await_args.kwargs["queues"] == ["video-upload", "image-upload"]
    assert run_mock.await_args.kwargs["with_maintenance"] is False
    closed.assert_awaited_once()

    await media_worker.serve(services.settings, queues=["image-thumbnail"])
    binaries.assert_called_once_with(services.settings)
