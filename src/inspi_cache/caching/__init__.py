"""
Two-tier caching for the Inspi platform.

- In-memory LRU layer (L1) for hot data
- Redis layer (L2) shared between processes
- Domain strategies, event driven invalidation and cache warming
"""

from .cache_manager import CacheManager, glob_to_regex
from .cache_warming import CacheWarmer, WarmingJob, WarmingMode
from .decorators import cache_evict, cacheable, cached, invalidates
from .events import CacheEventEmitter, CacheMetricsListener
from .invalidation import (
    CacheSyncManager,
    SyncEvent,
    SyncEventType,
    create_sync_event,
    validate_sync_event
)
from .key_strategy import (
    CacheKeyGenerator,
    CacheKeyPrefix,
    CacheStrategyConfig,
    InvalidationMode,
    KeyStrategy,
    ParsedCacheKey,
    default_strategy_configs
)
from .memory_store import MemoryStore
from .models import CacheEntry, CacheEvent, CacheEventType, CacheLayer
from .remote_store import ConnectionStatus, RemoteStore, create_redis_client
from .serialization import JsonSerializer, PydanticSerializer, Serializer
from .strategies import (
    ApiCacheStrategy,
    BaseCacheStrategy,
    KnowledgeGraphCacheStrategy,
    RankingCacheStrategy,
    SessionCacheStrategy,
    StrategyRegistry,
    UserCacheStrategy,
    WorkCacheStrategy
)

__all__ = [
    # Core classes
    'CacheManager',
    'MemoryStore',
    'RemoteStore',
    'ConnectionStatus',
    'CacheEntry',
    'CacheEvent',
    'CacheEventType',
    'CacheLayer',

    # Keys and configuration
    'CacheKeyGenerator',
    'CacheKeyPrefix',
    'CacheStrategyConfig',
    'InvalidationMode',
    'KeyStrategy',
    'ParsedCacheKey',
    'default_strategy_configs',

    # Serialization
    'Serializer',
    'JsonSerializer',
    'PydanticSerializer',

    # Events
    'CacheEventEmitter',
    'CacheMetricsListener',

    # Domain strategies
    'BaseCacheStrategy',
    'UserCacheStrategy',
    'WorkCacheStrategy',
    'RankingCacheStrategy',
    'KnowledgeGraphCacheStrategy',
    'SessionCacheStrategy',
    'ApiCacheStrategy',
    'StrategyRegistry',

    # Invalidation
    'CacheSyncManager',
    'SyncEvent',
    'SyncEventType',
    'create_sync_event',
    'validate_sync_event',

    # Cache warming
    'CacheWarmer',
    'WarmingJob',
    'WarmingMode',

    # Wrappers and utilities
    'cached',
    'invalidates',
    'cacheable',
    'cache_evict',
    'glob_to_regex',
    'create_redis_client'
]
