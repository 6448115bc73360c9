from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from assetflow.db.session import is_postgres

logger = logging.getLogger(__name__)

_RETRY_SECONDS = 15


def _lock_id(name: str) -> int:
    digest = hashlib.blake2b(str(name or "").encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big", signed=False)
    # Fit within signed BIGINT range.
    return int(value % (2**63 - 1))


async def _try_acquire(conn: AsyncConnection, lock_id: int) -> bool:
    result = await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id})
    return bool(result.scalar())


async def _release(conn: AsyncConnection, lock_id: int) -> None:
    try:
        await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})
    except Exception as exc:
        # Closing the connection drops the session lock anyway.
        logger.warning("maintenance_leader_unlock_failed", extra={"lock_id": lock_id, "error": str(exc)})


async def _pause(stop: asyncio.Event, seconds: float) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_as_leader(
    engine: AsyncEngine,
    *,
    name: str,
    stop: asyncio.Event,
    work: Callable[[asyncio.Event], Awaitable[None]],
    retry_seconds: int = _RETRY_SECONDS,
) -> None:
    """
    Run the given background loop only on the leader worker process.

    Uses a Postgres advisory lock held on a dedicated connection for the duration of
    ``work``. On non-Postgres backends (e.g., sqlite), runs the work without election.
    """
    if not is_postgres(engine):
        await work(stop)
        return

    lock_id = _lock_id(name)
    retry = max(1, int(retry_seconds or _RETRY_SECONDS))
    log_extra = {"lock_name": name, "lock_id": lock_id}

    while not stop.is_set():
        try:
            async with engine.connect() as conn:
                if not await _try_acquire(conn, lock_id):
                    await _pause(stop, retry)
                    continue
                logger.info("maintenance_leader_elected", extra=log_extra)
                try:
                    await work(stop)
                finally:
                    await _release(conn, lock_id)
                logger.info("maintenance_leader_stepped_down", extra=log_extra)
                return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("maintenance_leader_error", extra={**log_extra, "error": str(exc)})
            await _pause(stop, retry)
