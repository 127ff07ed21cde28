"""
Unit tests for event driven cache invalidation.
Tests invalidation routes, batching, requeue and discard.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from inspi_cache.caching.invalidation import (
    CacheSyncManager,
    SyncEvent,
    SyncEventType,
    create_sync_event,
    validate_sync_event,
)
from inspi_cache.config import CacheSettings, Settings, SyncSettings
from inspi_cache.exceptions import RemoteStoreConnectionException

SEEDED_KEYS = (
    "user:1",
    "user:1:info",
    "user:1:subscription",
    "user:2:info",
    "work:5",
    "work:5:detail",
    "work:6:detail",
    "work:list:recent",
    "work:popular:week",
    "work:recent:all",
    "ranking:contribution:all",
    "ranking:reuse:week",
    "kg:g1:data",
    "kg:g2:data",
)


@pytest.fixture
def seeded_manager(memory_only_manager):
    for key in SEEDED_KEYS:
        memory_only_manager.memory.set(key, "cached")
    return memory_only_manager


@pytest.fixture
def sync_manager(seeded_manager):
    return CacheSyncManager(seeded_manager, batch_size=10)


def remaining(manager):
    return sorted(manager.memory.keys())


def failing_manager():
    manager = AsyncMock()
    manager.delete.side_effect = RemoteStoreConnectionException(operation="delete")
    manager.delete_pattern.side_effect = RemoteStoreConnectionException(operation="delete_pattern")
    return manager


class TestSyncEvents:
    """Test event helpers."""

    def test_create_sync_event(self):
        event = create_sync_event(SyncEventType.WORK_PUBLISHED, "5", {"title": "Fractions"})

        assert event.entity_type == "work"
        assert event.entity_id == "5"
        assert event.retry_count == 0
        assert event.to_dict()["type"] == "work.published"

    def test_create_from_string(self):
        assert create_sync_event("graph.updated", "g1").type == SyncEventType.GRAPH_UPDATED

    def test_validate_sync_event(self):
        assert validate_sync_event(create_sync_event(SyncEventType.USER_UPDATED, "1"))
        assert not validate_sync_event({"type": "user.updated"})
        assert not validate_sync_event(SyncEvent(SyncEventType.USER_UPDATED, "", "user"))
        assert not validate_sync_event(SyncEvent(SyncEventType.USER_UPDATED, "1", "billing"))
        assert not validate_sync_event(SyncEvent(SyncEventType.USER_UPDATED, "1", "user", timestamp=0))

    def test_enqueue_rejects_invalid_event(self, sync_manager):
        with pytest.raises(ValueError):
            sync_manager.enqueue(SyncEvent(SyncEventType.USER_UPDATED, "", "user"))


class TestInvalidationRoutes:
    """Each event type drops the matching keys."""

    @pytest.mark.asyncio
    async def test_user_updated(self, sync_manager, seeded_manager):
        sync_manager.handle_user_updated("1", {"name": "Ada"})
        await sync_manager.flush()

        remaining_keys = remaining(seeded_manager)
        assert "user:1" not in remaining_keys
        assert "user:1:info" not in remaining_keys
        assert "user:1:subscription" not in remaining_keys
        assert "user:2:info" in remaining_keys

    @pytest.mark.asyncio
    async def test_subscription_updated_hits_user_entity(self, sync_manager, seeded_manager):
        sync_manager.handle_subscription_updated("1")
        await sync_manager.flush()

        assert "user:1:subscription" not in remaining(seeded_manager)

    @pytest.mark.asyncio
    async def test_work_updated(self, sync_manager, seeded_manager):
        sync_manager.handle_work_updated("5")
        await sync_manager.flush()

        remaining_keys = remaining(seeded_manager)
        assert "work:5" not in remaining_keys
        assert "work:5:detail" not in remaining_keys
        assert "work:list:recent" not in remaining_keys
        assert "work:6:detail" in remaining_keys
        assert "work:popular:week" in remaining_keys
        assert "ranking:contribution:all" in remaining_keys

    @pytest.mark.asyncio
    async def test_work_published(self, sync_manager, seeded_manager):
        sync_manager.handle_work_published("5")
        await sync_manager.flush()

        assert remaining(seeded_manager) == [
            "kg:g1:data",
            "kg:g2:data",
            "user:1",
            "user:1:info",
            "user:1:subscription",
            "user:2:info",
            "work:6:detail",
        ]

    @pytest.mark.asyncio
    async def test_contribution_updated(self, sync_manager, seeded_manager):
        sync_manager.handle_contribution_updated("1")
        await sync_manager.flush()

        remaining_keys = remaining(seeded_manager)
        assert not [key for key in remaining_keys if key.startswith("ranking:")]
        assert not [key for key in remaining_keys if key.startswith("user:1")]
        assert "user:2:info" in remaining_keys

    @pytest.mark.asyncio
    async def test_graph_updated(self, sync_manager, seeded_manager):
        sync_manager.handle_graph_updated("g1")
        await sync_manager.flush()

        remaining_keys = remaining(seeded_manager)
        assert "kg:g1:data" not in remaining_keys
        assert "kg:g2:data" in remaining_keys

    @pytest.mark.asyncio
    async def test_deletes_run_strictly(self):
        manager = AsyncMock()
        sync = CacheSyncManager(manager)
        sync.handle_user_deleted("1")

        await sync.flush()

        manager.delete.assert_awaited_once()
        assert manager.delete.await_args.args == ("user:1",)
        assert manager.delete.await_args.kwargs["strict"] is True
        patterns = [call.args[0] for call in manager.delete_pattern.await_args_list]
        assert patterns == ["user:1:*"]
        assert all(call.kwargs["strict"] for call in manager.delete_pattern.await_args_list)

    @pytest.mark.asyncio
    async def test_entity_key_is_not_a_glob(self, cache_manager, fake_redis):
        fake_redis.data["user:a?"] = b"cached"
        fake_redis.data["user:a[b]"] = b"cached"
        fake_redis.data["user:ab"] = b"cached"
        cache_manager.memory.set("user:a[b]", "cached")
        cache_manager.memory.set("user:ab", "cached")
        sync = CacheSyncManager(cache_manager)

        sync.handle_user_updated("a?")
        sync.handle_user_updated("a[b]")
        await sync.flush()

        assert sorted(fake_redis.data) == ["user:ab"]
        assert cache_manager.memory.keys() == ["user:ab"]


class TestBatching:
    """Test batch draining."""

    @pytest.mark.asyncio
    async def test_process_queue_takes_one_batch(self, seeded_manager):
        sync = CacheSyncManager(seeded_manager, batch_size=2)
        for user_id in ("1", "2", "3"):
            sync.handle_user_updated(user_id)

        assert await sync.process_queue() == 2
        assert sync.get_queue_status()["queue_size"] == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, sync_manager):
        assert await sync_manager.process_queue() == 0

    @pytest.mark.asyncio
    async def test_flush_drains_everything(self, seeded_manager):
        sync = CacheSyncManager(seeded_manager, batch_size=2)
        for user_id in ("1", "2", "3", "4", "5"):
            sync.enqueue(create_sync_event(SyncEventType.USER_UPDATED, user_id))
        await asyncio.sleep(0)

        await sync.flush()

        assert sync.get_queue_status()["queue_size"] == 0
        assert sync.stats['events_processed'] == 5

    @pytest.mark.asyncio
    async def test_early_drain_when_queue_exceeds_twice_batch_size(self, seeded_manager):
        sync = CacheSyncManager(seeded_manager, batch_size=2)
        for user_id in ("1", "2", "3", "4"):
            sync.handle_user_updated(user_id)
        await asyncio.sleep(0)
        assert sync.stats['batches_processed'] == 0

        sync.handle_user_updated("5")
        for _ in range(3):
            await asyncio.sleep(0)

        assert sync.stats['batches_processed'] == 1
        assert sync.get_queue_status()["queue_size"] == 3

    def test_enqueue_without_loop_waits_for_periodic_drain(self, seeded_manager):
        sync = CacheSyncManager(seeded_manager, batch_size=1)
        for user_id in ("1", "2", "3"):
            sync.handle_user_updated(user_id)

        assert sync.get_queue_status()["queue_size"] == 3

    @pytest.mark.asyncio
    async def test_periodic_worker(self, seeded_manager):
        sync = CacheSyncManager(seeded_manager, batch_interval=0.01)
        sync.handle_graph_updated("g1")

        sync.start()
        assert sync.get_queue_status()["running"] is True
        await asyncio.sleep(0.05)
        await sync.stop()

        assert sync.get_queue_status()["running"] is False
        assert "kg:g1:data" not in remaining(seeded_manager)

    def test_clear_queue(self, sync_manager):
        sync_manager.handle_user_updated("1")
        sync_manager.handle_work_created("2")

        assert sync_manager.clear_queue() == 2
        assert sync_manager.get_queue_status()["queue_size"] == 0

    def test_from_settings(self, seeded_manager):
        settings = Settings(
            cache=CacheSettings(_env_file=None),
            sync=SyncSettings(_env_file=None, batch_size=4, max_retries=1),
        )

        sync = CacheSyncManager.from_settings(seeded_manager, settings)

        assert sync.batch_size == 4
        assert sync.max_retries == 1


class TestRetryAndDiscard:
    """Failed batches are requeued until the retry limit."""

    @pytest.mark.asyncio
    async def test_failed_batch_is_requeued_in_order(self):
        sync = CacheSyncManager(failing_manager(), batch_size=2, max_retries=3)
        for user_id in ("1", "2", "3"):
            sync.handle_user_updated(user_id)

        assert await sync.process_queue() == 0

        queued = [event.entity_id for event in sync._queue]
        assert queued == ["1", "2", "3"]
        assert [event.retry_count for event in sync._queue] == [1, 1, 0]
        assert sync.stats['batches_failed'] == 1
        assert sync.stats['events_requeued'] == 2

    @pytest.mark.asyncio
    async def test_discarded_after_max_retries(self):
        discarded = []
        sync = CacheSyncManager(failing_manager(), max_retries=2, on_discard=discarded.append)
        sync.handle_work_updated("5")

        for _ in range(3):
            await sync.process_queue()

        assert [event.entity_id for event in discarded] == ["5"]
        assert discarded[0].retry_count == 3
        assert sync.get_queue_status()["queue_size"] == 0
        assert sync.stats['events_discarded'] == 1
        assert sync.stats['events_requeued'] == 2

    @pytest.mark.asyncio
    async def test_discard_callback_failure_is_contained(self):
        def broken_callback(event):
            raise RuntimeError("dead letter store down")

        sync = CacheSyncManager(failing_manager(), max_retries=0, on_discard=broken_callback)
        sync.handle_user_deleted("1")

        await sync.process_queue()

        assert sync.stats['events_discarded'] == 1

    @pytest.mark.asyncio
    async def test_flush_stops_on_failure(self):
        sync = CacheSyncManager(failing_manager(), max_retries=5)
        sync.handle_user_updated("1")

        assert await sync.flush() == 0
        assert sync.get_queue_status()["queue_size"] == 1
