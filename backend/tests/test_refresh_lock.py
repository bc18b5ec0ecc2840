import asyncio
import gc

import pytest

from reelcast.services import refresh_lock
from reelcast.services.refresh_lock import local_lock, redis_lock


class FakeRedis:
    """Just enough of SET NX PX / compare-and-delete for the lock."""

    def __init__(self):
        self.store = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


async def test_local_lock_serializes_same_key():
    order = []

    async def worker(name):
        async with local_lock(1, "youtube"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


async def test_local_lock_keys_are_independent():
    async with local_lock(1, "youtube"):
        await asyncio.wait_for(_enter(local_lock(2, "youtube")), timeout=0.5)
        await asyncio.wait_for(_enter(local_lock(1, "tiktok")), timeout=0.5)


async def _enter(lock):
    async with lock:
        pass


async def test_local_lock_registry_drops_released_locks():
    async with local_lock(7, "youtube"):
        assert "refresh:7:youtube" in refresh_lock._local_locks
    gc.collect()

    assert "refresh:7:youtube" not in refresh_lock._local_locks


async def test_redis_lock_released_after_block():
    r = FakeRedis()
    async with redis_lock(1, "youtube", ttl_sec=5, client=r):
        assert "refresh:1:youtube" in r.store
    assert r.store == {}


async def test_redis_lock_times_out_when_held():
    r = FakeRedis()
    r.store["refresh:1:youtube"] = "someone-else"

    with pytest.raises(TimeoutError):
        async with redis_lock(1, "youtube", ttl_sec=5, wait_timeout_sec=0.2, client=r):
            pass
    # another holder's lock is left alone
    assert r.store["refresh:1:youtube"] == "someone-else"
