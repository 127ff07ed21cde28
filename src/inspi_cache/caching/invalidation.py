"""
Event-driven cache invalidation.

Domain changes are queued as sync events and drained in batches, either on
a fixed interval or early when the queue grows past twice the batch size.
Each batch is grouped by event type and every group runs its invalidation
route. A failed batch goes back to the front of the queue with its retry
counters bumped; events past the retry limit are discarded and reported.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..logging_config import get_logger
from .cache_manager import CacheManager
from .key_strategy import KeyStrategy


class SyncEventType(str, Enum):
    """Domain changes that invalidate cached data."""
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    WORK_CREATED = "work.created"
    WORK_UPDATED = "work.updated"
    WORK_DELETED = "work.deleted"
    WORK_PUBLISHED = "work.published"
    CONTRIBUTION_UPDATED = "contribution.updated"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    GRAPH_UPDATED = "graph.updated"


ENTITY_TYPES = ("user", "work", "contribution", "subscription", "graph")


@dataclass
class SyncEvent:
    """A domain change waiting to be turned into invalidations."""
    type: SyncEventType
    entity_id: str
    entity_type: str
    timestamp: float = field(default_factory=time.time)
    payload: Optional[Dict[str, Any]] = None
    source: str = "cache-sync"
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'entity_id': self.entity_id,
            'entity_type': self.entity_type,
            'timestamp': self.timestamp,
            'payload': self.payload,
            'source': self.source,
            'retry_count': self.retry_count,
        }


DiscardCallback = Callable[[SyncEvent], Any]


def create_sync_event(
    event_type: SyncEventType,
    entity_id: str,
    payload: Optional[Dict[str, Any]] = None,
    source: str = "cache-sync",
) -> SyncEvent:
    """Build an event, deriving the entity type from the event name."""
    event_type = SyncEventType(event_type)
    return SyncEvent(
        type=event_type,
        entity_id=entity_id,
        entity_type=event_type.value.split('.', 1)[0],
        payload=payload,
        source=source,
    )


def validate_sync_event(event: Any) -> bool:
    """Check that an object is a well-formed sync event."""
    if not isinstance(event, SyncEvent):
        return False
    try:
        SyncEventType(event.type)
    except ValueError:
        return False
    return (
        bool(event.entity_id)
        and event.entity_type in ENTITY_TYPES
        and isinstance(event.timestamp, (int, float))
        and event.timestamp > 0
    )


class CacheSyncManager:
    """Batches sync events and applies targeted invalidations."""

    def __init__(
        self,
        cache_manager: CacheManager,
        key_strategy: Optional[KeyStrategy] = None,
        batch_size: int = 10,
        batch_interval: float = 5.0,
        max_retries: int = 3,
        on_discard: Optional[DiscardCallback] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.cache_manager = cache_manager
        self.key_strategy = key_strategy or KeyStrategy()
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.max_retries = max_retries
        self.on_discard = on_discard
        self.logger = get_logger(__name__, 'cache_sync')

        self._queue: Deque[SyncEvent] = deque()
        self._processing = False
        self._worker_task: Optional[asyncio.Task] = None
        self._drain_tasks = set()

        self._routes: Dict[SyncEventType, Callable[[SyncEvent], Awaitable[None]]] = {
            SyncEventType.USER_UPDATED: self._invalidate_user,
            SyncEventType.USER_DELETED: self._invalidate_user,
            SyncEventType.SUBSCRIPTION_UPDATED: self._invalidate_user,
            SyncEventType.WORK_CREATED: self._invalidate_work,
            SyncEventType.WORK_UPDATED: self._invalidate_work,
            SyncEventType.WORK_DELETED: self._invalidate_work,
            SyncEventType.WORK_PUBLISHED: self._invalidate_published_work,
            SyncEventType.CONTRIBUTION_UPDATED: self._invalidate_contribution,
            SyncEventType.GRAPH_UPDATED: self._invalidate_graph,
        }

        self.stats = {
            'events_enqueued': 0,
            'events_processed': 0,
            'events_requeued': 0,
            'events_discarded': 0,
            'batches_processed': 0,
            'batches_failed': 0,
        }

    @classmethod
    def from_settings(cls, cache_manager: CacheManager, settings, key_strategy: Optional[KeyStrategy] = None,
                      on_discard: Optional[DiscardCallback] = None) -> 'CacheSyncManager':
        return cls(
            cache_manager,
            key_strategy=key_strategy or KeyStrategy(settings.cache.strategies),
            batch_size=settings.sync.batch_size,
            batch_interval=settings.sync.batch_interval,
            max_retries=settings.sync.max_retries,
            on_discard=on_discard,
        )

    def enqueue(self, event: SyncEvent) -> None:
        """Queue an event; drains early once the queue exceeds twice the batch size."""
        if not validate_sync_event(event):
            raise ValueError(f"Invalid sync event: {event!r}")

        self._queue.append(event)
        self.stats['events_enqueued'] += 1
        self.logger.debug(
            "Sync event added to queue",
            operation="enqueue",
            event_type=event.type.value,
            entity_id=event.entity_id,
            queue_size=len(self._queue),
        )

        if len(self._queue) > self.batch_size * 2 and not self._processing:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.process_queue())
        except RuntimeError:
            # No loop yet; the periodic drain will pick the events up
            return
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    def _emit(self, event_type: SyncEventType, entity_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.enqueue(create_sync_event(event_type, entity_id, payload))

    def handle_user_updated(self, user_id: str, user_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.USER_UPDATED, user_id, user_data)

    def handle_user_deleted(self, user_id: str) -> None:
        self._emit(SyncEventType.USER_DELETED, user_id)

    def handle_work_created(self, work_id: str, work_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.WORK_CREATED, work_id, work_data)

    def handle_work_updated(self, work_id: str, work_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.WORK_UPDATED, work_id, work_data)

    def handle_work_deleted(self, work_id: str) -> None:
        self._emit(SyncEventType.WORK_DELETED, work_id)

    def handle_work_published(self, work_id: str, work_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.WORK_PUBLISHED, work_id, work_data)

    def handle_contribution_updated(self, user_id: str, contribution_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.CONTRIBUTION_UPDATED, user_id, contribution_data)

    def handle_subscription_updated(self, user_id: str, subscription_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.SUBSCRIPTION_UPDATED, user_id, subscription_data)

    def handle_graph_updated(self, graph_id: str, graph_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SyncEventType.GRAPH_UPDATED, graph_id, graph_data)

    async def process_queue(self) -> int:
        """
        Drain one batch.

        Returns:
            Number of events invalidated successfully in this batch
        """
        if self._processing or not self._queue:
            return 0

        self._processing = True
        batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]

        try:
            for event_type, events in self._group_by_type(batch).items():
                await self._process_group(event_type, events)
        except Exception as e:
            self.stats['batches_failed'] += 1
            self.logger.error(
                f"Failed to process sync batch: {e}",
                operation="process_queue",
                batch_size=len(batch),
            )
            self._requeue(batch)
            return 0
        finally:
            self._processing = False

        self.stats['batches_processed'] += 1
        self.stats['events_processed'] += len(batch)
        self.logger.info("Sync batch processed", operation="process_queue", batch_size=len(batch))
        return len(batch)

    @staticmethod
    def _group_by_type(events: List[SyncEvent]) -> Dict[SyncEventType, List[SyncEvent]]:
        groups: Dict[SyncEventType, List[SyncEvent]] = {}
        for event in events:
            groups.setdefault(event.type, []).append(event)
        return groups

    async def _process_group(self, event_type: SyncEventType, events: List[SyncEvent]) -> None:
        route = self._routes.get(event_type)
        if route is None:
            self.logger.warning(f"No invalidation route for {event_type}", operation="process_queue")
            return
        for event in events:
            await route(event)

    def _requeue(self, batch: List[SyncEvent]) -> None:
        retry = []
        for event in batch:
            event.retry_count += 1
            if event.retry_count > self.max_retries:
                self._discard(event)
            else:
                retry.append(event)

        # Failed events go back to the front in their original order
        self._queue.extendleft(reversed(retry))
        self.stats['events_requeued'] += len(retry)

    def _discard(self, event: SyncEvent) -> None:
        self.stats['events_discarded'] += 1
        self.logger.warning(
            "Sync event discarded after exhausting retries",
            operation="discard",
            event_type=event.type.value,
            entity_id=event.entity_id,
            retry_count=event.retry_count,
        )
        if self.on_discard is None:
            return
        try:
            self.on_discard(event)
        except Exception as e:
            self.logger.error(f"Discard callback failed: {e}", operation="discard")

    async def _invalidate_entity(self, strategy_name: str, entity_id: str) -> None:
        config = self.key_strategy.get_config(strategy_name)
        layers = config.cache_layers
        await self.cache_manager.delete(
            self.key_strategy.entity_key(config.prefix, entity_id), layers=layers, strict=True
        )
        await self.cache_manager.delete_pattern(
            self.key_strategy.entity_pattern(config.prefix, entity_id), layers=layers, strict=True
        )

    async def _invalidate_prefix(self, strategy_name: str, *segments: str) -> None:
        config = self.key_strategy.get_config(strategy_name)
        await self.cache_manager.delete_pattern(
            self.key_strategy.generator.pattern(config.prefix, *segments), layers=config.cache_layers, strict=True
        )

    async def _invalidate_user(self, event: SyncEvent) -> None:
        await self._invalidate_entity("user", event.entity_id)

    async def _invalidate_work(self, event: SyncEvent) -> None:
        await self._invalidate_entity("work", event.entity_id)
        await self._invalidate_prefix("work", "list", "*")

    async def _invalidate_published_work(self, event: SyncEvent) -> None:
        await self._invalidate_entity("work", event.entity_id)
        await self._invalidate_prefix("ranking", "*")
        for listing in ("list", "popular", "recent"):
            await self._invalidate_prefix("work", listing, "*")

    async def _invalidate_contribution(self, event: SyncEvent) -> None:
        await self._invalidate_prefix("ranking", "*")
        await self._invalidate_entity("user", event.entity_id)

    async def _invalidate_graph(self, event: SyncEvent) -> None:
        await self._invalidate_entity("graph", event.entity_id)

    async def flush(self) -> int:
        """Drain until the queue is empty or a batch fails."""
        processed = 0
        while self._queue and not self._processing:
            count = await self.process_queue()
            if count == 0:
                break
            processed += count
        return processed

    def clear_queue(self) -> int:
        count = len(self._queue)
        self._queue.clear()
        self.logger.info(f"Cleared {count} queued sync events", operation="clear_queue")
        return count

    def start(self) -> None:
        """Start the periodic drain on the running loop."""
        if self._worker_task is not None and not self._worker_task.done():
            self.logger.warning("Cache sync processor is already running", operation="start")
            return
        self._worker_task = asyncio.get_running_loop().create_task(self._worker())
        self.logger.info("Cache sync processor started", operation="start")

    async def stop(self) -> None:
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        if self._drain_tasks:
            await asyncio.gather(*list(self._drain_tasks), return_exceptions=True)
        self.logger.info("Cache sync processor stopped", operation="stop")

    async def _worker(self) -> None:
        while True:
            await asyncio.sleep(self.batch_interval)
            if self._queue and not self._processing:
                await self.process_queue()

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            'queue_size': len(self._queue),
            'processing': self._processing,
            'running': self._worker_task is not None and not self._worker_task.done(),
            'batch_size': self.batch_size,
            'batch_interval': self.batch_interval,
            'max_retries': self.max_retries,
            'stats': dict(self.stats),
        }
