"""
Core cache data types shared by the storage layers and the manager.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class CacheLayer(str, Enum):
    """Cache tier enumeration."""
    MEMORY = "memory"
    REMOTE = "remote"
    ORIGIN = "origin"


class CacheEventType(str, Enum):
    """Observable cache state transitions."""
    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    EXPIRE = "expire"
    EVICT = "evict"
    CLEAR = "clear"
    ERROR = "error"


@dataclass
class CacheEntry:
    """Cache entry with metadata, owned by the layer that stores it."""
    value: Any
    stored_at: float
    ttl_seconds: int
    layer: CacheLayer = CacheLayer.MEMORY
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        """Expired strictly after ``stored_at + ttl``; a ttl <= 0 never expires."""
        if self.ttl_seconds <= 0:
            return False
        return now - self.stored_at > self.ttl_seconds

    def touch(self) -> None:
        self.access_count += 1


@dataclass
class CacheEvent:
    """Structured notification of a cache state transition."""
    type: CacheEventType
    layer: Optional[CacheLayer]
    key: str
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'layer': self.layer.value if self.layer else None,
            'key': self.key,
            'timestamp': self.timestamp,
            'metadata': self.metadata,
        }
