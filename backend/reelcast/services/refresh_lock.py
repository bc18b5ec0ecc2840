"""
Per-(user, platform) mutual exclusion around OAuth token refresh.

Two backends:
- local: asyncio.Lock registry, enough for a single API process
- redis: SET key token NX PX ttl, for several API / worker processes sharing
  one database. The TTL releases the lock if the holder crashes.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
import weakref
from typing import AsyncIterator

import redis.asyncio as aioredis

from reelcast.settings import get_settings

logger = logging.getLogger(__name__)

# Entries vanish once no caller holds or waits on the lock
_local_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
_redis_client: aioredis.Redis | None = None

# Compare-and-delete so a holder whose TTL lapsed cannot release someone else's lock
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _lock_key(user_id: int, platform: str) -> str:
    return f"refresh:{user_id}:{platform}"


def _get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


@contextlib.asynccontextmanager
async def local_lock(user_id: int, platform: str) -> AsyncIterator[None]:
    key = _lock_key(user_id, platform)
    lock = _local_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[key] = lock
    async with lock:
        yield


@contextlib.asynccontextmanager
async def redis_lock(
    user_id: int,
    platform: str,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: float | None = None,
    client: aioredis.Redis | None = None,
) -> AsyncIterator[None]:
    """Hold a Redis lock for the duration of the block.

    Raises:
        TimeoutError: if the lock could not be taken within wait_timeout_sec
    """
    if ttl_sec is None:
        ttl_sec = get_settings().refresh_lock_ttl_sec
    if wait_timeout_sec is None:
        wait_timeout_sec = float(ttl_sec)

    r = client or _get_redis()
    key = _lock_key(user_id, platform)
    token = str(uuid.uuid4())
    deadline = time.monotonic() + wait_timeout_sec
    backoff = 0.1

    while True:
        acquired = await r.set(key, token, nx=True, px=ttl_sec * 1000)
        if acquired:
            logger.debug(f"[refresh-lock] Acquired {key} (token={token[:8]}…)")
            break
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"Refresh lock {key}: timed out after {wait_timeout_sec}s")
        await asyncio.sleep(min(backoff, remaining))
        backoff = min(backoff * 1.5, 2.0)

    try:
        yield
    finally:
        released = await r.eval(_RELEASE_SCRIPT, 1, key, token)
        if not released:
            logger.warning(f"[refresh-lock] {key} expired before release (token={token[:8]}…)")


def refresh_lock(user_id: int, platform: str):
    """Lock for the configured backend (REFRESH_LOCK_BACKEND=local|redis)."""
    if get_settings().refresh_lock_backend.strip().lower() == "redis":
        return redis_lock(user_id, platform)
    return local_lock(user_id, platform)
