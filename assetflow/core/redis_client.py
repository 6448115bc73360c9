from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable
from typing import Any, TYPE_CHECKING, TypeVar, cast

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

T = TypeVar("T")


def create_redis(url: str) -> "RedisClient":
    """Build a Redis client for the given URL; callers own its lifecycle."""
    from redis.asyncio import Redis

    cleaned = (url or "").strip()
    if not cleaned:
        raise RuntimeError("REDIS_URL is required for the queue fabric")
    return Redis.from_url(cleaned, encoding="utf-8", decode_responses=True)


async def close_redis(client: "RedisClient | None") -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("Failed to close Redis client")


async def await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def json_loads(raw: str) -> Any:
    return json.loads(raw)
