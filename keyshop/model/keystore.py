# model/keystore.py
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import StoreUnavailable
from ..infra.timings import timeit

logger = logging.getLogger(__name__)


# ---- keys
def k_queue(product_id: str) -> str: return f"keys:queue:{product_id}"
def k_fingerprint() -> str: return "keys:fingerprint"
def k_order(oid: str) -> str: return f"order:{oid}"


def connect(url: str, max_connections: int = 64) -> redis.Redis:
    return redis.from_url(
        url,
        decode_responses=True,
        max_connections=max_connections,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


@asynccontextmanager
async def guarded(kind: str) -> AsyncIterator[None]:
    """
    Time one store round-trip and turn any Redis failure into
    StoreUnavailable, so callers never see driver exceptions:

        async with guarded("inventory.claim"):
            key = await r.lpop(k_queue(pid))
    """
    try:
        async with timeit(kind):
            yield
    except RedisError as e:
        logger.error("store call %s failed: %s", kind, e)
        raise StoreUnavailable(f"{kind}: key store unavailable") from e
