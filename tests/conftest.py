"""
Shared fixtures for the cache subsystem tests.
"""
import fnmatch

import pytest

from inspi_cache.caching.cache_manager import CacheManager
from inspi_cache.caching.memory_store import MemoryStore
from inspi_cache.caching.remote_store import RemoteStore
from inspi_cache.config import RedisSettings


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio client.

    Supports the commands the remote store issues. Setting ``fail_with``
    makes every command raise that error, which is how tests take the
    server down.
    """

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.calls = []
        self.fail_with = None
        self.closed = False

    def _command(self, name):
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self):
        self._command("ping")
        return True

    async def get(self, key):
        self._command("get")
        return self.data.get(key)

    async def set(self, key, value):
        self._command("set")
        self.data[key] = value
        self.expiry.pop(key, None)
        return True

    async def setex(self, key, ttl, value):
        self._command("setex")
        self.data[key] = value
        self.expiry[key] = ttl
        return True

    async def delete(self, *keys):
        self._command("delete")
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.expiry.pop(key, None)
                removed += 1
        return removed

    async def exists(self, key):
        self._command("exists")
        return int(key in self.data)

    async def expire(self, key, seconds):
        self._command("expire")
        if key not in self.data:
            return False
        self.expiry[key] = seconds
        return True

    async def ttl(self, key):
        self._command("ttl")
        if key not in self.data:
            return -2
        return self.expiry.get(key, -1)

    async def incrby(self, key, amount):
        self._command("incrby")
        value = int(self.data.get(key, b"0")) + amount
        self.data[key] = str(value).encode()
        return value

    async def decrby(self, key, amount):
        return await self.incrby(key, -amount)

    def scan_iter(self, match=None, count=None):
        self._command("scan_iter")
        keys = [key for key in self.data if match is None or fnmatch.fnmatchcase(key, match)]

        async def iterate():
            for key in keys:
                yield key.encode()

        return iterate()

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    """Fake clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_settings():
    """Redis settings isolated from the environment file."""
    return RedisSettings(_env_file=None, max_reconnect_attempts=3, reconnect_base_delay_ms=100)


@pytest.fixture
def remote_store(redis_settings, fake_redis, clock):
    return RemoteStore(redis_settings, client=fake_redis, clock=clock)


@pytest.fixture
def memory_store(clock):
    return MemoryStore(max_size=100, default_ttl=300, clock=clock)


@pytest.fixture
def cache_manager(memory_store, remote_store):
    """Two-layer manager backed by the fake redis client."""
    return CacheManager(memory=memory_store, remote=remote_store, default_ttl=300, default_remote_ttl=3600)


@pytest.fixture
def memory_only_manager(clock):
    return CacheManager(memory=MemoryStore(max_size=100, default_ttl=300, clock=clock))
