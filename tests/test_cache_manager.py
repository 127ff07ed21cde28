"""
Unit tests for the multi-layer cache manager.
Tests read/write-through, remote degradation and stampede protection.
"""
import asyncio

import pytest
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from inspi_cache.caching.cache_manager import CacheManager, glob_to_regex
from inspi_cache.caching.models import CacheEventType, CacheLayer
from inspi_cache.caching.serialization import PydanticSerializer
from inspi_cache.exceptions import RemoteStoreException, SerializationException


class UserProfile(BaseModel):
    id: str
    name: str


@pytest.fixture
def events(cache_manager):
    """Collect every event the manager emits."""
    seen = []
    cache_manager.events.add_listener(seen.append)
    return seen


class TestReadWriteThrough:
    """Test layered reads and writes."""

    @pytest.mark.asyncio
    async def test_set_writes_both_layers(self, cache_manager, fake_redis):
        assert await cache_manager.set("user:1", {"name": "Ada"}) is True

        assert cache_manager.memory.get("user:1") == {"name": "Ada"}
        assert fake_redis.data["user:1"] == b'{"name":"Ada"}'
        assert fake_redis.expiry["user:1"] == 3600

    @pytest.mark.asyncio
    async def test_get_prefers_memory(self, cache_manager, fake_redis):
        await cache_manager.set("user:1", "memory value")
        fake_redis.data["user:1"] = b'"remote value"'

        assert await cache_manager.get("user:1") == "memory value"

    @pytest.mark.asyncio
    async def test_remote_hit_backfills_memory(self, cache_manager):
        await cache_manager.set("user:1", {"name": "Ada"}, layers=[CacheLayer.REMOTE])
        assert cache_manager.memory.get("user:1") is None

        assert await cache_manager.get("user:1", ttl=30) == {"name": "Ada"}
        assert cache_manager.memory.ttl("user:1") == 30

    @pytest.mark.asyncio
    async def test_backfill_uses_default_memory_ttl(self, cache_manager):
        await cache_manager.set("user:1", "x", layers=[CacheLayer.REMOTE], ttl=3000)

        await cache_manager.get("user:1")

        assert cache_manager.memory.ttl("user:1") == 300

    @pytest.mark.asyncio
    async def test_separate_remote_ttl(self, cache_manager, fake_redis, clock):
        await cache_manager.set("work:1", "x", ttl=60, remote_ttl=600)

        assert cache_manager.memory.ttl("work:1") == 60
        assert fake_redis.expiry["work:1"] == 600

    @pytest.mark.asyncio
    async def test_memory_only_layer(self, cache_manager, fake_redis):
        await cache_manager.set("api:x", "v", layers=[CacheLayer.MEMORY])

        assert "api:x" not in fake_redis.data
        assert await cache_manager.get("api:x", layers=[CacheLayer.MEMORY]) == "v"

    @pytest.mark.asyncio
    async def test_miss(self, cache_manager, events):
        assert await cache_manager.get("user:missing") is None
        assert cache_manager.stats['misses'] == 1
        assert [e.type for e in events] == [CacheEventType.MISS, CacheEventType.MISS]

    @pytest.mark.asyncio
    async def test_none_is_rejected(self, cache_manager):
        with pytest.raises(ValueError):
            await cache_manager.set("user:1", None)

    @pytest.mark.asyncio
    async def test_delete(self, cache_manager, fake_redis):
        await cache_manager.set("user:1", "x")

        assert await cache_manager.delete("user:1") is True
        assert "user:1" not in fake_redis.data
        assert await cache_manager.get("user:1") is None

    @pytest.mark.asyncio
    async def test_exists_ttl_expire(self, cache_manager):
        await cache_manager.set("user:1", "x", layers=[CacheLayer.REMOTE], ttl=100)

        assert await cache_manager.exists("user:1") is True
        assert await cache_manager.ttl("user:1") == 100
        assert await cache_manager.expire("user:1", 50) is True
        assert await cache_manager.ttl("user:1") == 50
        assert await cache_manager.exists("user:missing") is False

    @pytest.mark.asyncio
    async def test_increment_drops_memory_copy(self, cache_manager):
        cache_manager.memory.set("api:count", 10)

        assert await cache_manager.increment("api:count") == 1
        assert cache_manager.memory.get("api:count") is None

    @pytest.mark.asyncio
    async def test_typed_serializer(self, cache_manager):
        serializer = PydanticSerializer(UserProfile)
        profile = UserProfile(id="1", name="Ada")
        await cache_manager.set("user:1", profile, layers=[CacheLayer.REMOTE], serializer=serializer)

        restored = await cache_manager.get("user:1", serializer=serializer)

        assert restored == profile


class TestSerializationFailures:
    """Serialization errors reach the caller."""

    @pytest.mark.asyncio
    async def test_unencodable_value(self, cache_manager):
        with pytest.raises(SerializationException) as exc_info:
            await cache_manager.set("user:1", {1, 2, 3})
        assert exc_info.value.details["key"] == "user:1"

    @pytest.mark.asyncio
    async def test_corrupt_remote_payload(self, cache_manager, fake_redis):
        fake_redis.data["user:1"] = b"{not json"

        with pytest.raises(SerializationException):
            await cache_manager.get("user:1")


class TestRemoteDegradation:
    """A failing remote layer degrades to memory."""

    @pytest.mark.asyncio
    async def test_set_keeps_memory_write(self, cache_manager, fake_redis, events):
        fake_redis.fail_with = RedisConnectionError("down")

        assert await cache_manager.set("user:1", "x") is False

        assert cache_manager.memory.get("user:1") == "x"
        errors = [e for e in events if e.type == CacheEventType.ERROR]
        assert len(errors) == 1
        assert errors[0].layer == CacheLayer.REMOTE
        assert errors[0].metadata["error_code"] == "REMOTE_STORE_CONNECTION_ERROR"

    @pytest.mark.asyncio
    async def test_get_serves_memory(self, cache_manager, fake_redis):
        await cache_manager.set("user:1", "x")
        fake_redis.fail_with = RedisConnectionError("down")

        assert await cache_manager.get("user:1") == "x"

    @pytest.mark.asyncio
    async def test_get_turns_remote_failure_into_miss(self, cache_manager, fake_redis):
        fake_redis.fail_with = RedisConnectionError("down")

        assert await cache_manager.get("user:1") is None
        assert cache_manager.stats['errors'] == 1

    @pytest.mark.asyncio
    async def test_refused_connection_is_a_miss(self, cache_manager, fake_redis):
        fake_redis.fail_with = ResponseError("DENIED Redis is running in protected mode")

        assert await cache_manager.get("user:2") is None
        assert await cache_manager.exists("user:2") is False
        assert cache_manager.stats['errors'] >= 1

    @pytest.mark.asyncio
    async def test_get_or_set_works_with_remote_down(self, cache_manager, fake_redis):
        fake_redis.fail_with = RedisConnectionError("down")

        value = await cache_manager.get_or_set("user:1", lambda: {"name": "Ada"})

        assert value == {"name": "Ada"}
        assert cache_manager.memory.get("user:1") == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_delete_pattern_strict(self, cache_manager, fake_redis):
        await cache_manager.set("work:1:detail", "x")
        fake_redis.fail_with = RedisConnectionError("down")

        with pytest.raises(RemoteStoreException):
            await cache_manager.delete_pattern("work:1:*", strict=True)

        assert cache_manager.memory.get("work:1:detail") is None

    @pytest.mark.asyncio
    async def test_delete_pattern_lenient(self, cache_manager, fake_redis):
        await cache_manager.set("work:1:detail", "x")
        fake_redis.fail_with = RedisConnectionError("down")

        assert await cache_manager.delete_pattern("work:1:*") == 1

    @pytest.mark.asyncio
    async def test_increment_returns_none_when_down(self, cache_manager, fake_redis):
        fake_redis.fail_with = RedisConnectionError("down")

        assert await cache_manager.increment("api:count") is None


class TestGetOrSet:
    """Test read-through population and stampede protection."""

    @pytest.mark.asyncio
    async def test_factory_called_on_miss_only(self, cache_manager):
        calls = []

        async def load():
            calls.append(1)
            return {"id": 1}

        assert await cache_manager.get_or_set("work:1", load) == {"id": 1}
        assert await cache_manager.get_or_set("work:1", load) == {"id": 1}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_sync_factory(self, cache_manager):
        assert await cache_manager.get_or_set("work:1", lambda: [1, 2]) == [1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_factory_call(self, cache_manager):
        calls = []

        async def slow_load():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"id": 7}

        results = await asyncio.gather(
            *(cache_manager.get_or_set("work:7", slow_load) for _ in range(10))
        )

        assert len(calls) == 1
        assert all(result == {"id": 7} for result in results)
        assert cache_manager.stats['coalesced_calls'] == 9
        assert cache_manager._inflight == {}

    @pytest.mark.asyncio
    async def test_factory_error_reaches_every_waiter(self, cache_manager):
        calls = []

        async def failing_load():
            calls.append(1)
            await asyncio.sleep(0.01)
            raise LookupError("origin down")

        results = await asyncio.gather(
            *(cache_manager.get_or_set("work:9", failing_load) for _ in range(3)),
            return_exceptions=True,
        )

        assert len(calls) == 1
        assert all(isinstance(result, LookupError) for result in results)
        assert cache_manager._inflight == {}

    @pytest.mark.asyncio
    async def test_none_result_is_not_cached(self, cache_manager):
        calls = []

        def load():
            calls.append(1)
            return None

        assert await cache_manager.get_or_set("work:1", load) is None
        assert await cache_manager.get_or_set("work:1", load) is None
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh(self, cache_manager):
        await cache_manager.set("work:1", "stale")

        value = await cache_manager.get_or_set("work:1", lambda: "fresh", force_refresh=True)

        assert value == "fresh"
        assert await cache_manager.get("work:1") == "fresh"


class TestManagerHousekeeping:
    """Test clearing, lifecycle and statistics."""

    @pytest.mark.asyncio
    async def test_clear(self, cache_manager, fake_redis):
        await cache_manager.set("user:1", "a")
        await cache_manager.set("work:1", "b")
        fake_redis.data["foreign:key"] = b"1"

        await cache_manager.clear()

        assert len(cache_manager.memory) == 0
        assert list(fake_redis.data) == ["foreign:key"]

    @pytest.mark.asyncio
    async def test_without_remote_layer(self, memory_only_manager):
        assert await memory_only_manager.set("user:1", "x") is True
        assert await memory_only_manager.get("user:1") == "x"
        assert memory_only_manager.get_stats()['remote'] is None

    @pytest.mark.asyncio
    async def test_context_manager(self, cache_manager, fake_redis):
        async with cache_manager as manager:
            assert manager.remote.is_ready()
            assert manager.memory.is_running

        assert fake_redis.closed
        assert not cache_manager.memory.is_running

    @pytest.mark.asyncio
    async def test_start_survives_remote_down(self, cache_manager, fake_redis):
        fake_redis.fail_with = RedisConnectionError("down")

        await cache_manager.start()

        assert not cache_manager.remote.is_ready()
        await cache_manager.close()

    @pytest.mark.asyncio
    async def test_memory_evictions_become_events(self, clock, remote_store):
        from inspi_cache.caching.memory_store import MemoryStore

        manager = CacheManager(memory=MemoryStore(max_size=1, clock=clock), remote=remote_store)
        seen = []
        manager.events.add_listener(seen.append)

        await manager.set("a", 1, layers=[CacheLayer.MEMORY])
        await manager.set("b", 2, layers=[CacheLayer.MEMORY])

        assert CacheEventType.EVICT in [e.type for e in seen]

    @pytest.mark.asyncio
    async def test_stats(self, cache_manager):
        await cache_manager.set("user:1", "x")
        await cache_manager.get("user:1")
        await cache_manager.get("user:2")

        stats = cache_manager.get_stats()
        assert stats['manager']['hits'] == 1
        assert stats['manager']['misses'] == 1
        assert stats['manager']['hit_rate'] == 0.5
        assert stats['memory']['size'] == 1
        assert stats['remote']['status'] == "ready"


def test_glob_to_regex():
    pattern = glob_to_regex("work:*:detail")

    assert pattern.fullmatch("work:1:detail")
    assert pattern.fullmatch("work:a:b:detail")
    assert not pattern.fullmatch("work:1:stats")
