"""
Cache event delivery.

Listeners are registered explicitly on an emitter owned by the cache
manager. Delivery never blocks or fails the cache operation that produced
the event: listener errors are logged and coroutine listeners are
scheduled as tasks.
"""

import asyncio
from typing import Any, Callable, List, Optional, Set

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit
from .models import CacheEvent, CacheEventType, CacheLayer

CacheEventListener = Callable[[CacheEvent], Any]


class CacheEventEmitter:
    """Fan-out of cache events to registered listeners."""

    def __init__(self, listeners: Optional[List[CacheEventListener]] = None):
        self.logger = get_logger(__name__, 'cache_events')
        self._listeners: List[CacheEventListener] = list(listeners or [])
        self._pending: Set[asyncio.Task] = set()
        self.events_emitted = 0
        self.listener_errors = 0

    def add_listener(self, listener: CacheEventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: CacheEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event: CacheEvent) -> None:
        """Deliver an event to every listener without raising."""
        self.events_emitted += 1
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as e:
                self.listener_errors += 1
                self.logger.error(
                    f"Cache event listener failed: {e}",
                    operation="emit",
                    event_type=event.type.value,
                    key=event.key,
                )

    def _schedule(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self.logger.warning("No running event loop for async cache listener", operation="emit")
            return

        self._pending.add(task)
        task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.listener_errors += 1
            self.logger.error(f"Async cache event listener failed: {error}", operation="emit")

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class CacheMetricsListener:
    """
    Turns cache events into metrics.

    Counters are named ``cache_<layer>_<type>_total`` and each layer gets a
    ``cache_<layer>_hit_rate`` gauge in percent.
    """

    def __init__(self, metrics: MetricsCollector):
        self.metrics = metrics
        self._lookups = {layer: {'hits': 0, 'misses': 0} for layer in CacheLayer}

    def __call__(self, event: CacheEvent) -> None:
        layer = event.layer.value if event.layer else "all"
        self.metrics.get_counter(f"cache_{layer}_{event.type.value}_total").increment(1)

        if event.layer is None or event.type not in (CacheEventType.HIT, CacheEventType.MISS):
            return

        lookups = self._lookups[event.layer]
        lookups['hits' if event.type == CacheEventType.HIT else 'misses'] += 1
        total = lookups['hits'] + lookups['misses']
        self.metrics.get_gauge(f"cache_{layer}_hit_rate", unit=MetricUnit.PERCENT).set(
            round(lookups['hits'] / total * 100, 2)
        )
