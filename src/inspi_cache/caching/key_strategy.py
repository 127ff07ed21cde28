"""
Cache key construction and per-domain cache configuration.

Keys have the wire format ``prefix:identifier[:suffix][:vN]``. The prefix
comes from a fixed set, the identifier is a single non-empty segment, the
suffix may span several segments and the optional version is a trailing
``v<digits>`` segment.
"""

import re
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..exceptions import CacheConfigurationException
from .models import CacheLayer

KEY_SEPARATOR = ":"

_VERSION_SEGMENT = re.compile(r"v\d+")


class CacheKeyPrefix(str, Enum):
    """Allowed key prefixes."""
    USER = "user"
    WORK = "work"
    RANKING = "ranking"
    KNOWLEDGE_GRAPH = "kg"
    SESSION = "session"
    API = "api"
    TEMP = "temp"


class InvalidationMode(str, Enum):
    """How entries of a domain stop being served."""
    TTL = "ttl"
    MANUAL = "manual"
    EVENT_DRIVEN = "event_driven"


class ParsedCacheKey(BaseModel):
    """Components of a cache key."""
    model_config = ConfigDict(frozen=True)

    prefix: CacheKeyPrefix
    identifier: str
    suffix: Optional[str] = None
    version: Optional[int] = None


class CacheKeyGenerator:
    """Builds and parses cache keys."""

    @staticmethod
    def generate(
        prefix,
        identifier: str,
        suffix: Optional[str] = None,
        version: Optional[int] = None,
    ) -> str:
        """
        Build a cache key from its parts.

        Args:
            prefix: A ``CacheKeyPrefix`` or its string value
            identifier: Entity identifier, a single segment
            suffix: Optional qualifier, may contain ``:`` separated segments
            version: Optional non-negative schema version

        Returns:
            The joined key

        Raises:
            CacheConfigurationException: If any part is malformed
        """
        prefix = CacheKeyGenerator._coerce_prefix(prefix)

        if not identifier:
            raise CacheConfigurationException("Cache key identifier must not be empty",
                                              config_key="identifier")
        if KEY_SEPARATOR in identifier:
            raise CacheConfigurationException(
                f"Cache key identifier must not contain '{KEY_SEPARATOR}'",
                config_key="identifier", config_value=identifier,
            )

        parts = [prefix.value, identifier]

        if suffix is not None:
            segments = suffix.split(KEY_SEPARATOR)
            if any(not segment for segment in segments):
                raise CacheConfigurationException(
                    "Cache key suffix must not contain empty segments",
                    config_key="suffix", config_value=suffix,
                )
            # A trailing version-like segment would be read back as the version
            if _VERSION_SEGMENT.fullmatch(segments[-1]):
                raise CacheConfigurationException(
                    "Cache key suffix must not end with a version-like segment",
                    config_key="suffix", config_value=suffix,
                )
            parts.append(suffix)

        if version is not None:
            if isinstance(version, bool) or not isinstance(version, int) or version < 0:
                raise CacheConfigurationException(
                    "Cache key version must be a non-negative integer",
                    config_key="version", config_value=version,
                )
            parts.append(f"v{version}")

        return KEY_SEPARATOR.join(parts)

    @staticmethod
    def parse(key: str) -> ParsedCacheKey:
        """Split a key produced by ``generate`` back into its parts."""
        parts = key.split(KEY_SEPARATOR)
        if len(parts) < 2 or not parts[1]:
            raise CacheConfigurationException("Malformed cache key", config_key="key", config_value=key)

        prefix = CacheKeyGenerator._coerce_prefix(parts[0])
        identifier = parts[1]
        rest = parts[2:]

        version = None
        if rest and _VERSION_SEGMENT.fullmatch(rest[-1]):
            version = int(rest.pop()[1:])

        suffix = KEY_SEPARATOR.join(rest) if rest else None
        return ParsedCacheKey(prefix=prefix, identifier=identifier, suffix=suffix, version=version)

    @staticmethod
    def pattern(prefix, *segments: str) -> str:
        """Build a glob pattern under a prefix, e.g. ``work:42:*``."""
        prefix = CacheKeyGenerator._coerce_prefix(prefix)
        return KEY_SEPARATOR.join([prefix.value, *segments])

    @staticmethod
    def _coerce_prefix(prefix) -> CacheKeyPrefix:
        try:
            return CacheKeyPrefix(prefix)
        except ValueError:
            raise CacheConfigurationException(
                f"Unknown cache key prefix: {prefix}",
                config_key="prefix", config_value=prefix,
            )


class LayerTTL(BaseModel):
    """TTL in seconds per layer."""
    model_config = ConfigDict(frozen=True)

    memory: int = Field(300, ge=0)
    remote: int = Field(3600, ge=0)


class LayerMaxSize(BaseModel):
    """Entry budget per layer."""
    model_config = ConfigDict(frozen=True)

    memory: int = Field(1000, gt=0)
    remote: int = Field(100000, gt=0)


class InvalidationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: InvalidationMode = InvalidationMode.TTL
    events: Tuple[str, ...] = ()


class CacheStrategyConfig(BaseModel):
    """Immutable cache configuration for one domain."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    prefix: CacheKeyPrefix
    layers: Tuple[CacheLayer, ...] = (CacheLayer.MEMORY, CacheLayer.REMOTE)
    ttl: LayerTTL = LayerTTL()
    max_size: LayerMaxSize = LayerMaxSize()
    invalidation: InvalidationConfig = InvalidationConfig()

    @field_validator("layers", mode="before")
    @classmethod
    def parse_layers(cls, v):
        if isinstance(v, str):
            return tuple(layer.strip() for layer in v.split(",") if layer.strip())
        return v

    @model_validator(mode="after")
    def check_layers(self):
        if not self.layers:
            raise ValueError("A cache strategy needs at least one layer")
        return self

    @property
    def cache_layers(self) -> List[CacheLayer]:
        """Layers the cache manager should touch, without the origin tier."""
        return [layer for layer in self.layers if layer != CacheLayer.ORIGIN]


def default_strategy_configs() -> Dict[str, CacheStrategyConfig]:
    """Built-in strategy configurations keyed by strategy name."""
    all_tiers = (CacheLayer.MEMORY, CacheLayer.REMOTE, CacheLayer.ORIGIN)
    return {
        "user": CacheStrategyConfig(
            prefix=CacheKeyPrefix.USER,
            layers=all_tiers,
            ttl=LayerTTL(memory=300, remote=1800),
            max_size=LayerMaxSize(memory=1000, remote=50000),
            invalidation=InvalidationConfig(
                mode=InvalidationMode.EVENT_DRIVEN,
                events=("user.updated", "user.deleted", "subscription.updated"),
            ),
        ),
        "work": CacheStrategyConfig(
            prefix=CacheKeyPrefix.WORK,
            layers=all_tiers,
            ttl=LayerTTL(memory=600, remote=3600),
            max_size=LayerMaxSize(memory=2000, remote=100000),
            invalidation=InvalidationConfig(
                mode=InvalidationMode.EVENT_DRIVEN,
                events=("work.created", "work.updated", "work.deleted", "work.published"),
            ),
        ),
        "ranking": CacheStrategyConfig(
            prefix=CacheKeyPrefix.RANKING,
            layers=all_tiers,
            ttl=LayerTTL(memory=300, remote=1800),
            max_size=LayerMaxSize(memory=200, remote=5000),
            invalidation=InvalidationConfig(
                mode=InvalidationMode.EVENT_DRIVEN,
                events=("contribution.updated", "work.published"),
            ),
        ),
        "graph": CacheStrategyConfig(
            prefix=CacheKeyPrefix.KNOWLEDGE_GRAPH,
            layers=all_tiers,
            ttl=LayerTTL(memory=1800, remote=7200),
            max_size=LayerMaxSize(memory=500, remote=20000),
            invalidation=InvalidationConfig(
                mode=InvalidationMode.EVENT_DRIVEN,
                events=("graph.updated",),
            ),
        ),
        "session": CacheStrategyConfig(
            prefix=CacheKeyPrefix.SESSION,
            layers=(CacheLayer.REMOTE,),
            ttl=LayerTTL(memory=0, remote=86400),
            max_size=LayerMaxSize(memory=1, remote=100000),
            invalidation=InvalidationConfig(mode=InvalidationMode.MANUAL),
        ),
        "api": CacheStrategyConfig(
            prefix=CacheKeyPrefix.API,
            layers=(CacheLayer.MEMORY, CacheLayer.REMOTE),
            ttl=LayerTTL(memory=60, remote=300),
            max_size=LayerMaxSize(memory=1000, remote=20000),
            invalidation=InvalidationConfig(mode=InvalidationMode.TTL),
        ),
    }


DEFAULT_STRATEGY_NAMES = ("user", "work", "ranking", "graph", "session", "api")


class KeyStrategy:
    """
    Per-domain configuration lookup plus key helpers.

    Every name in ``required`` must be configured; the check runs in the
    constructor so a missing domain fails at startup instead of on the
    first request.
    """

    def __init__(
        self,
        configs: Optional[Mapping[str, CacheStrategyConfig]] = None,
        required: Iterable[str] = DEFAULT_STRATEGY_NAMES,
    ):
        self._configs: Dict[str, CacheStrategyConfig] = dict(
            configs if configs is not None else default_strategy_configs()
        )
        self.generator = CacheKeyGenerator()

        missing = [name for name in required if name not in self._configs]
        if missing:
            raise CacheConfigurationException(
                f"Missing cache strategy configuration: {', '.join(missing)}",
                config_key="strategies", config_value=missing,
            )

    def get_config(self, name: str) -> CacheStrategyConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise CacheConfigurationException(
                f"Unknown cache strategy: {name}", config_key="strategy", config_value=name
            )

    def names(self) -> List[str]:
        return list(self._configs)

    def generate(self, prefix, identifier: str, suffix: Optional[str] = None,
                 version: Optional[int] = None) -> str:
        return self.generator.generate(prefix, identifier, suffix, version)

    def parse(self, key: str) -> ParsedCacheKey:
        return self.generator.parse(key)

    def entity_key(self, prefix, entity_id: str) -> str:
        return self.generator.generate(prefix, entity_id)

    def entity_pattern(self, prefix, entity_id: str) -> str:
        """Pattern covering every key nested under an entity."""
        return self.generator.pattern(prefix, entity_id, "*")
