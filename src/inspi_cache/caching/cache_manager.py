"""
Multi-layer cache manager.

Coordinates the memory layer (L1) and the remote layer (L2) with
read-through and write-through semantics. Remote failures degrade to
misses and surface as events; serialization failures propagate to the
caller. Concurrent ``get_or_set`` calls for the same key share a single
factory invocation.
"""

import asyncio
import inspect
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar, Union

from ..exceptions import RemoteStoreException, RemoteStoreNotReadyException
from ..logging_config import get_logger
from .events import CacheEventEmitter
from .key_strategy import CacheKeyPrefix
from .memory_store import MemoryStore
from .models import CacheEvent, CacheEventType, CacheLayer
from .remote_store import RemoteStore
from .serialization import JsonSerializer, Serializer, decode_value, encode_value

T = TypeVar('T')

Factory = Callable[[], Union[T, Awaitable[T]]]

DEFAULT_LAYERS = (CacheLayer.MEMORY, CacheLayer.REMOTE)


def glob_to_regex(pattern: str) -> "re.Pattern":
    """Translate a glob where only ``*`` is special into an anchored regex."""
    return re.compile('.*'.join(re.escape(part) for part in pattern.split('*')))


class CacheManager:
    """Multi-layer cache manager."""

    def __init__(
        self,
        memory: Optional[MemoryStore] = None,
        remote: Optional[RemoteStore] = None,
        serializer: Optional[Serializer] = None,
        emitter: Optional[CacheEventEmitter] = None,
        default_ttl: int = 300,
        default_remote_ttl: int = 3600,
        default_layers: Sequence[CacheLayer] = DEFAULT_LAYERS,
    ):
        self.memory = memory or MemoryStore(default_ttl=default_ttl)
        self.remote = remote
        self.serializer = serializer or JsonSerializer()
        self.events = emitter or CacheEventEmitter()
        self.default_ttl = default_ttl
        self.default_remote_ttl = default_remote_ttl
        self.default_layers = tuple(default_layers)
        self.logger = get_logger(__name__, 'cache_manager')

        if self.memory.listener is None:
            self.memory.listener = self._on_memory_event

        self._inflight: Dict[str, asyncio.Task] = {}

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'factory_calls': 0,
            'coalesced_calls': 0,
        }

    @classmethod
    def from_settings(cls, settings=None, emitter: Optional[CacheEventEmitter] = None) -> 'CacheManager':
        """Build a manager with its own memory and remote stores."""
        if settings is None:
            from ..config import get_settings
            settings = get_settings()

        memory = MemoryStore(
            max_size=settings.cache.memory_max_size,
            default_ttl=settings.cache.memory_ttl,
            cleanup_interval=settings.cache.cleanup_interval,
        )
        return cls(
            memory=memory,
            remote=RemoteStore(settings.redis),
            emitter=emitter,
            default_ttl=settings.cache.memory_ttl,
            default_remote_ttl=settings.cache.remote_ttl,
        )

    def _resolve_layers(self, layers: Optional[Iterable[CacheLayer]]) -> List[CacheLayer]:
        requested = self.default_layers if layers is None else tuple(CacheLayer(layer) for layer in layers)
        resolved = []
        for layer in (CacheLayer.MEMORY, CacheLayer.REMOTE):
            if layer not in requested:
                continue
            if layer == CacheLayer.REMOTE and self.remote is None:
                continue
            resolved.append(layer)
        return resolved

    def _emit(self, event_type: CacheEventType, layer: Optional[CacheLayer], key: str, **metadata) -> None:
        self.events.emit(CacheEvent(type=event_type, layer=layer, key=key, metadata=metadata))

    def _on_memory_event(self, event_type: CacheEventType, key: str) -> None:
        self._emit(event_type, CacheLayer.MEMORY, key)

    def _remote_failure(self, operation: str, key: str, error: RemoteStoreException) -> None:
        self.stats['errors'] += 1
        if isinstance(error, RemoteStoreNotReadyException):
            self.logger.debug(f"Remote layer not ready for {operation}", operation=operation, key=key)
        else:
            self.logger.warning(f"Remote layer {operation} failed: {error.message}", operation=operation, key=key)
        self._emit(
            CacheEventType.ERROR, CacheLayer.REMOTE, key,
            operation=operation, error_code=error.error_code, error=error.message,
        )

    async def get(
        self,
        key: str,
        *,
        layers: Optional[Iterable[CacheLayer]] = None,
        ttl: Optional[int] = None,
        force_refresh: bool = False,
        serializer: Optional[Serializer] = None,
    ) -> Optional[Any]:
        """
        Read a value, checking memory before the remote layer.

        A remote hit is written back to memory with the read ``ttl`` (or the
        default memory TTL), not with the TTL it was originally stored
        with. Remote failures count as a miss.

        Raises:
            SerializationException: If the remote payload cannot be decoded
        """
        if force_refresh:
            return None

        resolved = self._resolve_layers(layers)

        for layer in resolved:
            if layer == CacheLayer.MEMORY:
                value = self.memory.get(key)
                if value is not None:
                    self.stats['hits'] += 1
                    self._emit(CacheEventType.HIT, layer, key)
                    return value
                self._emit(CacheEventType.MISS, layer, key)
                continue

            try:
                data = await self.remote.get(key)
            except RemoteStoreException as e:
                self._remote_failure("get", key, e)
                continue

            if data is None:
                self._emit(CacheEventType.MISS, layer, key)
                continue

            value = decode_value(serializer or self.serializer, data, key)
            self.stats['hits'] += 1
            self._emit(CacheEventType.HIT, layer, key)

            if CacheLayer.MEMORY in resolved and value is not None:
                self.memory.set(key, value, ttl if ttl is not None else self.default_ttl)
            return value

        self.stats['misses'] += 1
        return None

    async def set(
        self,
        key: str,
        value: Any,
        *,
        layers: Optional[Iterable[CacheLayer]] = None,
        ttl: Optional[int] = None,
        remote_ttl: Optional[int] = None,
        serializer: Optional[Serializer] = None,
    ) -> bool:
        """
        Write a value to every requested layer.

        Layers are written independently: a failed remote write leaves the
        memory write in place. Returns True when every layer accepted it.

        Raises:
            ValueError: If value is None
            SerializationException: If the value cannot be encoded
        """
        if value is None:
            raise ValueError("None cannot be cached")

        written = True
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                self.memory.set(key, value, ttl if ttl is not None else self.default_ttl)
                self._emit(CacheEventType.SET, layer, key)
                continue

            data = encode_value(serializer or self.serializer, value, key)
            if remote_ttl is None:
                remote_ttl = ttl if ttl is not None else self.default_remote_ttl
            try:
                await self.remote.set(key, data, remote_ttl)
            except RemoteStoreException as e:
                self._remote_failure("set", key, e)
                written = False
                continue
            self._emit(CacheEventType.SET, layer, key)

        self.stats['sets'] += 1
        return written

    async def delete(
        self,
        key: str,
        *,
        layers: Optional[Iterable[CacheLayer]] = None,
        strict: bool = False,
    ) -> bool:
        """
        Delete a key from every requested layer; True if any layer held it.

        The key is taken literally. With ``strict`` a remote failure is
        re-raised after the memory layer has been cleared.
        """
        removed = False
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                removed = self.memory.delete(key) or removed
            else:
                try:
                    removed = await self.remote.delete(key) or removed
                except RemoteStoreException as e:
                    self._remote_failure("delete", key, e)
                    if strict:
                        raise
                    continue
            self._emit(CacheEventType.DELETE, layer, key)

        self.stats['deletes'] += 1
        return removed

    async def delete_pattern(
        self,
        pattern: str,
        *,
        layers: Optional[Iterable[CacheLayer]] = None,
        strict: bool = False,
    ) -> int:
        """
        Delete every key matching a glob pattern.

        Memory matches with ``*`` as the only wildcard; the remote layer
        uses its native glob matching. With ``strict`` a remote failure is
        re-raised after the memory layer has been purged.
        """
        removed = 0
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                count = self.memory.delete_matching(glob_to_regex(pattern))
            else:
                try:
                    count = await self.remote.delete_pattern(pattern)
                except RemoteStoreException as e:
                    self._remote_failure("delete_pattern", pattern, e)
                    if strict:
                        raise
                    continue
            removed += count
            self._emit(CacheEventType.DELETE, layer, pattern, pattern=True, count=count)

        self.stats['deletes'] += removed
        return removed

    async def exists(self, key: str, *, layers: Optional[Iterable[CacheLayer]] = None) -> bool:
        """True if any requested layer holds the key."""
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                if self.memory.has(key):
                    return True
                continue
            try:
                if await self.remote.exists(key):
                    return True
            except RemoteStoreException as e:
                self._remote_failure("exists", key, e)
        return False

    async def get_or_set(
        self,
        key: str,
        factory: Factory,
        *,
        layers: Optional[Iterable[CacheLayer]] = None,
        ttl: Optional[int] = None,
        remote_ttl: Optional[int] = None,
        force_refresh: bool = False,
        serializer: Optional[Serializer] = None,
    ) -> Any:
        """
        Read-through lookup.

        On a miss the factory (sync or async) is called and its result
        written with ``set``. Callers arriving while a factory call for the
        same key is running wait for that call instead of starting another.
        A factory result of None is returned but not cached.
        """
        layers = None if layers is None else list(layers)

        if not force_refresh:
            pending = self._inflight.get(key)
            if pending is not None:
                return await self._join(pending)

            value = await self.get(key, layers=layers, ttl=ttl, serializer=serializer)
            if value is not None:
                return value

        # Another caller may have started the factory while we were reading
        pending = self._inflight.get(key)
        if pending is not None:
            return await self._join(pending)

        task = asyncio.get_running_loop().create_task(
            self._populate(key, factory, layers, ttl, remote_ttl, serializer)
        )
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._release(key, done))
        return await asyncio.shield(task)

    async def _join(self, pending: asyncio.Task) -> Any:
        self.stats['coalesced_calls'] += 1
        return await asyncio.shield(pending)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as observed even if every waiter went away
        if not task.cancelled():
            task.exception()

    async def _populate(self, key, factory, layers, ttl, remote_ttl, serializer) -> Any:
        self.stats['factory_calls'] += 1
        value = factory()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            await self.set(key, value, layers=layers, ttl=ttl, remote_ttl=remote_ttl, serializer=serializer)
        return value

    async def ttl(self, key: str, *, layers: Optional[Iterable[CacheLayer]] = None) -> Optional[int]:
        """Remaining TTL from the first layer holding the key."""
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                remaining = self.memory.ttl(key)
            else:
                try:
                    remaining = await self.remote.ttl(key)
                except RemoteStoreException as e:
                    self._remote_failure("ttl", key, e)
                    continue
            if remaining is not None:
                return remaining
        return None

    async def expire(self, key: str, seconds: int, *, layers: Optional[Iterable[CacheLayer]] = None) -> bool:
        """Reset the TTL of a key in every requested layer."""
        updated = False
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                updated = self.memory.expire(key, seconds) or updated
                continue
            try:
                updated = await self.remote.expire(key, seconds) or updated
            except RemoteStoreException as e:
                self._remote_failure("expire", key, e)
        return updated

    async def increment(self, key: str, amount: int = 1) -> Optional[int]:
        """
        Increment a counter held in the remote layer.

        Any memory copy of the key is dropped so readers go to the counter.
        Returns None when the remote layer is unavailable.
        """
        self.memory.delete(key)
        if self.remote is None:
            return None
        try:
            return await self.remote.incr(key, amount)
        except RemoteStoreException as e:
            self._remote_failure("increment", key, e)
            return None

    async def clear(self, *, layers: Optional[Iterable[CacheLayer]] = None) -> int:
        """Drop every cache entry; the remote layer only loses keys under known prefixes."""
        cleared = 0
        for layer in self._resolve_layers(layers):
            if layer == CacheLayer.MEMORY:
                cleared += self.memory.clear()
            else:
                for prefix in CacheKeyPrefix:
                    try:
                        cleared += await self.remote.delete_pattern(f"{prefix.value}:*")
                    except RemoteStoreException as e:
                        self._remote_failure("clear", f"{prefix.value}:*", e)
                        break
            self._emit(CacheEventType.CLEAR, layer, "*")

        self.logger.info(f"Cleared {cleared} cache entries", operation="clear")
        return cleared

    async def start(self) -> None:
        """Start memory cleanup and try to connect the remote layer."""
        self.memory.start()
        if self.remote is None:
            return
        try:
            await self.remote.connect()
        except RemoteStoreException as e:
            self.logger.warning(
                f"Remote layer unavailable at startup, serving from memory: {e.message}",
                operation="start",
            )

    async def close(self) -> None:
        await self.memory.stop()
        if self.remote is not None:
            await self.remote.close()
        await self.events.drain()

    async def __aenter__(self) -> 'CacheManager':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics for the manager and both layers."""
        total_requests = self.stats['hits'] + self.stats['misses']
        return {
            'manager': {
                **self.stats,
                'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
                'inflight': len(self._inflight),
            },
            'memory': self.memory.get_stats(),
            'remote': self.remote.get_stats() if self.remote is not None else None,
        }
