"""
Domain cache strategies.

Each strategy binds a key prefix and a ``CacheStrategyConfig`` to the
cache manager and exposes the domain's read/write helpers. Disabled
strategies pass straight through: reads miss, writes and deletes are
no-ops and ``get_or_set`` always calls the factory.
"""

import inspect
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import CacheConfigurationException
from ..logging_config import get_logger
from .cache_manager import CacheManager, Factory
from .key_strategy import CacheKeyGenerator, CacheStrategyConfig, KeyStrategy


class BaseCacheStrategy:
    """Cache access for one domain."""

    strategy_name: str = ""

    def __init__(self, cache_manager: CacheManager, config: CacheStrategyConfig):
        self.cache_manager = cache_manager
        self.config = config
        self.logger = get_logger(__name__, f'{self.strategy_name or "cache"}_strategy')

    def is_enabled(self) -> bool:
        return self.config.enabled

    def build_key(self, identifier: str, suffix: Optional[str] = None) -> str:
        return CacheKeyGenerator.generate(self.config.prefix, identifier, suffix)

    def build_pattern(self, *segments: str) -> str:
        return CacheKeyGenerator.pattern(self.config.prefix, *segments)

    async def get(self, identifier: str, suffix: Optional[str] = None) -> Optional[Any]:
        if not self.is_enabled():
            return None
        return await self.cache_manager.get(
            self.build_key(identifier, suffix),
            layers=self.config.cache_layers,
            ttl=self.config.ttl.memory,
        )

    async def set(self, identifier: str, value: Any, suffix: Optional[str] = None,
                  ttl: Optional[int] = None) -> bool:
        """Write with the domain TTLs; an explicit ttl replaces both."""
        if not self.is_enabled():
            return False
        return await self.cache_manager.set(
            self.build_key(identifier, suffix),
            value,
            layers=self.config.cache_layers,
            ttl=ttl if ttl is not None else self.config.ttl.memory,
            remote_ttl=ttl if ttl is not None else self.config.ttl.remote,
        )

    async def delete(self, identifier: str, suffix: Optional[str] = None) -> bool:
        if not self.is_enabled():
            return False
        return await self.cache_manager.delete(self.build_key(identifier, suffix), layers=self.config.cache_layers)

    async def delete_pattern(self, *segments: str) -> int:
        if not self.is_enabled():
            return 0
        return await self.cache_manager.delete_pattern(self.build_pattern(*segments), layers=self.config.cache_layers)

    async def get_or_set(self, identifier: str, factory: Factory, suffix: Optional[str] = None,
                         ttl: Optional[int] = None) -> Any:
        if not self.is_enabled():
            value = factory()
            if inspect.isawaitable(value):
                value = await value
            return value

        return await self.cache_manager.get_or_set(
            self.build_key(identifier, suffix),
            factory,
            layers=self.config.cache_layers,
            ttl=ttl if ttl is not None else self.config.ttl.memory,
            remote_ttl=ttl if ttl is not None else self.config.ttl.remote,
        )

    async def invalidate(self, identifiers: Optional[Iterable[str]] = None) -> int:
        """Drop the given entities, or the whole domain when none are given."""
        identifiers = list(identifiers) if identifiers else None
        removed = 0
        if identifiers:
            for identifier in identifiers:
                removed += await self.delete_pattern(identifier)
                removed += await self.delete_pattern(identifier, "*")
        else:
            removed += await self.delete_pattern("*")

        self.logger.info(f"{self.strategy_name} cache invalidated", operation="invalidate",
                         identifiers=identifiers, removed=removed)
        return removed

    async def warmup(self, entries: Optional[Dict[str, Any]] = None) -> int:
        """
        Preload entries keyed by identifier (or ``identifier:suffix``).

        Failed writes are logged and skipped.
        """
        if not self.is_enabled() or not entries:
            return 0

        warmed = 0
        for key, value in entries.items():
            identifier, _, suffix = key.partition(':')
            try:
                if await self.set(identifier, value, suffix or None):
                    warmed += 1
            except Exception as e:
                self.logger.error(f"Failed to warm {self.strategy_name} entry: {e}",
                                  operation="warmup", identifier=identifier)

        self.logger.info(f"{self.strategy_name} cache warmup completed", operation="warmup", warmed=warmed)
        return warmed


class UserCacheStrategy(BaseCacheStrategy):
    strategy_name = "user"

    async def get_user_info(self, user_id: str) -> Optional[Any]:
        return await self.get(user_id, "info")

    async def set_user_info(self, user_id: str, user_info: Any) -> bool:
        return await self.set(user_id, user_info, "info")

    async def get_user_subscription(self, user_id: str) -> Optional[Any]:
        return await self.get(user_id, "subscription")

    async def set_user_subscription(self, user_id: str, subscription: Any) -> bool:
        return await self.set(user_id, subscription, "subscription")

    async def get_user_preferences(self, user_id: str) -> Optional[Any]:
        return await self.get(user_id, "preferences")

    async def set_user_preferences(self, user_id: str, preferences: Any) -> bool:
        return await self.set(user_id, preferences, "preferences")


class WorkCacheStrategy(BaseCacheStrategy):
    strategy_name = "work"

    async def get_work_detail(self, work_id: str) -> Optional[Any]:
        return await self.get(work_id, "detail")

    async def set_work_detail(self, work_id: str, work_detail: Any) -> bool:
        return await self.set(work_id, work_detail, "detail")

    async def get_work_list(self, filters: str) -> Optional[Any]:
        return await self.get("list", filters)

    async def set_work_list(self, filters: str, work_list: Any) -> bool:
        # Listings change with every write, keep them on the short memory TTL
        return await self.set("list", work_list, filters, ttl=self.config.ttl.memory)

    async def get_work_stats(self, work_id: str) -> Optional[Any]:
        return await self.get(work_id, "stats")

    async def set_work_stats(self, work_id: str, stats: Any) -> bool:
        return await self.set(work_id, stats, "stats", ttl=self.config.ttl.memory)

    async def invalidate(self, identifiers: Optional[Iterable[str]] = None) -> int:
        identifiers = list(identifiers) if identifiers else None
        removed = await super().invalidate(identifiers)
        if identifiers:
            removed += await self.delete_pattern("list", "*")
        return removed


class RankingCacheStrategy(BaseCacheStrategy):
    strategy_name = "ranking"

    async def get_contribution_ranking(self, period: str = "all") -> Optional[Any]:
        return await self.get("contribution", period)

    async def set_contribution_ranking(self, period: str, ranking: Any) -> bool:
        return await self.set("contribution", ranking, period)

    async def get_work_reuse_ranking(self, period: str = "all") -> Optional[Any]:
        return await self.get("reuse", period)

    async def set_work_reuse_ranking(self, period: str, ranking: Any) -> bool:
        return await self.set("reuse", ranking, period)

    async def get_popular_works_ranking(self, period: str = "week") -> Optional[Any]:
        return await self.get("popular", period)

    async def set_popular_works_ranking(self, period: str, ranking: Any) -> bool:
        return await self.set("popular", ranking, period)


class KnowledgeGraphCacheStrategy(BaseCacheStrategy):
    strategy_name = "graph"

    async def get_graph_data(self, graph_id: str) -> Optional[Any]:
        return await self.get(graph_id, "data")

    async def set_graph_data(self, graph_id: str, graph_data: Any) -> bool:
        return await self.set(graph_id, graph_data, "data")

    async def get_node_info(self, graph_id: str, node_id: str) -> Optional[Any]:
        return await self.get(graph_id, f"node:{node_id}")

    async def set_node_info(self, graph_id: str, node_id: str, node_info: Any) -> bool:
        return await self.set(graph_id, node_info, f"node:{node_id}")


class SessionCacheStrategy(BaseCacheStrategy):
    strategy_name = "session"

    async def get_session_data(self, session_id: str) -> Optional[Any]:
        return await self.get(session_id)

    async def set_session_data(self, session_id: str, data: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(session_id, data, ttl=ttl)

    async def delete_session(self, session_id: str) -> bool:
        return await self.delete(session_id)


class ApiCacheStrategy(BaseCacheStrategy):
    strategy_name = "api"

    async def get_response(self, endpoint: str, params_hash: str) -> Optional[Any]:
        return await self.get(endpoint, params_hash)

    async def set_response(self, endpoint: str, params_hash: str, response: Any) -> bool:
        return await self.set(endpoint, response, params_hash)


STRATEGY_CLASSES = {
    cls.strategy_name: cls
    for cls in (
        UserCacheStrategy,
        WorkCacheStrategy,
        RankingCacheStrategy,
        KnowledgeGraphCacheStrategy,
        SessionCacheStrategy,
        ApiCacheStrategy,
    )
}


class StrategyRegistry:
    """
    Builds every domain strategy up front.

    Construction fails with ``CacheConfigurationException`` when any domain
    lacks a configuration.
    """

    def __init__(self, cache_manager: CacheManager, key_strategy: Optional[KeyStrategy] = None):
        self.cache_manager = cache_manager
        self.key_strategy = key_strategy or KeyStrategy()
        self.logger = get_logger(__name__, 'strategy_registry')
        self._strategies: Dict[str, BaseCacheStrategy] = {
            name: strategy_cls(cache_manager, self.key_strategy.get_config(name))
            for name, strategy_cls in STRATEGY_CLASSES.items()
        }

    def get(self, name: str) -> BaseCacheStrategy:
        try:
            return self._strategies[name]
        except KeyError:
            raise CacheConfigurationException(
                f"Unknown cache strategy: {name}", config_key="strategy", config_value=name
            )

    def __getitem__(self, name: str) -> BaseCacheStrategy:
        return self.get(name)

    @property
    def user(self) -> UserCacheStrategy:
        return self._strategies["user"]

    @property
    def work(self) -> WorkCacheStrategy:
        return self._strategies["work"]

    @property
    def ranking(self) -> RankingCacheStrategy:
        return self._strategies["ranking"]

    @property
    def graph(self) -> KnowledgeGraphCacheStrategy:
        return self._strategies["graph"]

    @property
    def session(self) -> SessionCacheStrategy:
        return self._strategies["session"]

    @property
    def api(self) -> ApiCacheStrategy:
        return self._strategies["api"]

    def names(self) -> List[str]:
        return list(self._strategies)

    async def invalidate_all(self) -> int:
        removed = 0
        for name, strategy in self._strategies.items():
            try:
                removed += await strategy.invalidate()
            except Exception as e:
                self.logger.error(f"Failed to invalidate {name} cache: {e}", operation="invalidate_all")
        return removed
