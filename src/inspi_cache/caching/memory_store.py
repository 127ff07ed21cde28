"""
In-process memory cache (L1).

Bounded map with per-entry TTL. When full, the entry with the fewest
accesses is evicted, the oldest ``stored_at`` winning ties. Expired
entries are dropped lazily on access and by a periodic cleanup task.
"""

import asyncio
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from ..logging_config import get_logger
from .models import CacheEntry, CacheEventType, CacheLayer

# Notified with (event_type, key) when the store drops an entry on its own
StoreListener = Callable[[CacheEventType, str], None]


class MemoryStore:
    """LRU memory cache with TTL."""

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: int = 300,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
        listener: Optional[StoreListener] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self.listener = listener
        self.logger = get_logger(__name__, 'memory_store')

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._cleanup_task: Optional[asyncio.Task] = None

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
            'expirations': 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def get(self, key: str) -> Optional[Any]:
        """Return the value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats['misses'] += 1
            return None

        if entry.is_expired(self.clock()):
            self._expire(key)
            self.stats['misses'] += 1
            return None

        entry.touch()
        self._entries.move_to_end(key)
        self.stats['hits'] += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value, evicting one entry first if the store is full."""
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_one()

        self._entries[key] = CacheEntry(
            value=value,
            stored_at=self.clock(),
            ttl_seconds=self.default_ttl if ttl is None else ttl,
            layer=CacheLayer.MEMORY,
        )
        self._entries.move_to_end(key)
        self.stats['sets'] += 1

    def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is not None:
            self.stats['deletes'] += 1
            return True
        return False

    def has(self, key: str) -> bool:
        """Presence check; does not count as an access."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self.clock()):
            self._expire(key)
            return False
        return True

    def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds, -1 for entries without expiry, None if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.ttl_seconds <= 0:
            return -1
        now = self.clock()
        if entry.is_expired(now):
            self._expire(key)
            return None
        return max(0, int(entry.stored_at + entry.ttl_seconds - now))

    def expire(self, key: str, ttl: int) -> bool:
        """Restart an entry's lifetime with a new TTL."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self.clock()):
            return False
        entry.stored_at = self.clock()
        entry.ttl_seconds = ttl
        return True

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> List[str]:
        return list(self._entries)

    def delete_matching(self, pattern: "re.Pattern") -> int:
        """Delete every key the compiled regex fully matches."""
        matched = [key for key in self._entries if pattern.fullmatch(key)]
        for key in matched:
            del self._entries[key]
        self.stats['deletes'] += len(matched)
        return len(matched)

    def cleanup(self) -> int:
        """Remove all expired entries and return how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._expire(key)

        if expired:
            self.logger.debug(f"Removed {len(expired)} expired entries", operation="cleanup")
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def _evict_one(self) -> None:
        victim_key = None
        victim = None
        for key, entry in self._entries.items():
            if (victim is None
                    or entry.access_count < victim.access_count
                    or (entry.access_count == victim.access_count and entry.stored_at < victim.stored_at)):
                victim_key, victim = key, entry

        if victim_key is None:
            return

        del self._entries[victim_key]
        self.stats['evictions'] += 1
        self._notify(CacheEventType.EVICT, victim_key)

    def _expire(self, key: str) -> None:
        del self._entries[key]
        self.stats['expirations'] += 1
        self._notify(CacheEventType.EXPIRE, key)

    def _notify(self, event_type: CacheEventType, key: str) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event_type, key)
        except Exception as e:
            self.logger.error(f"Memory store listener failed: {e}", operation=event_type.value, key=key)

    def start(self) -> None:
        """Start the periodic cleanup task on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                self.logger.error(f"Memory cleanup failed: {e}", operation="cleanup")

    def get_stats(self) -> Dict[str, Any]:
        """Get memory cache statistics."""
        total_requests = self.stats['hits'] + self.stats['misses']
        hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

        return {
            **self.stats,
            'size': len(self._entries),
            'max_size': self.max_size,
            'hit_rate': hit_rate,
            'total_requests': total_requests,
        }
