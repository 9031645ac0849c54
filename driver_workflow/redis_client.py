import json

import redis.asyncio as redis

from driver_workflow.config import settings
from driver_workflow.order_state import DriverOrderStatus

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this key was already seen (duplicate submission).
    Returns False if key is new -> caller should proceed.
    Uses SETNX: set if not exists. If we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds or settings.idempotency_ttl_seconds)
    return not was_set


async def forget_idempotency(key: str) -> None:
    """Release a key after a failed attempt so the driver can retry with it."""
    r = await get_redis()
    await r.delete(key)


async def publish_status(order_id: str, status: DriverOrderStatus) -> None:
    """Broadcast a committed status on the realtime channel."""
    r = await get_redis()
    await r.publish(settings.realtime_channel, json.dumps({"order_id": order_id, "status": status.value}))
