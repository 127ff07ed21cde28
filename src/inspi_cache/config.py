"""
Cache Configuration - Settings and Environment Management

Environment-driven settings for the cache subsystem:
- Remote store connection (standalone, sentinel or cluster)
- Memory layer sizing and per-domain cache strategies
- Retry and circuit breaker defaults
- Sync queue batching
- Logging
"""
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum

from .caching.key_strategy import CacheStrategyConfig, DEFAULT_STRATEGY_NAMES, default_strategy_configs
from .logging_config import LogFormat


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Remote store connection settings."""

    # Full URL (takes precedence over the individual parts if set)
    url: Optional[str] = Field(None, description="redis:// or rediss:// URL")

    host: str = Field("localhost")
    port: int = Field(6379)
    password: Optional[str] = Field(None)
    db: int = Field(0)

    # Topology
    cluster_enabled: bool = Field(False)
    sentinel_enabled: bool = Field(False)
    sentinel_master: str = Field("mymaster")
    sentinels: str = Field("", description="Comma separated host:port entries")

    # Timeouts in seconds
    connect_timeout: float = Field(5.0)
    read_timeout: float = Field(3.0)
    max_retries_per_request: int = Field(3)

    # Reconnection policy
    max_reconnect_attempts: int = Field(10)
    reconnect_base_delay_ms: int = Field(100)
    reconnect_max_delay_ms: int = Field(3000)

    scan_count: int = Field(500)

    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("max_reconnect_attempts", "scan_count")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_topology(self):
        if self.cluster_enabled and self.sentinel_enabled:
            raise ValueError("Cluster and sentinel modes are mutually exclusive")
        return self

    def get_sentinel_hosts(self) -> List[Tuple[str, int]]:
        hosts = []
        for entry in (s.strip() for s in self.sentinels.split(",")):
            if not entry:
                continue
            host, _, port = entry.rpartition(":")
            hosts.append((host or entry, int(port) if host else 26379))
        return hosts

    def get_connection_summary(self) -> Dict[str, Any]:
        """Connection parameters with credentials removed."""
        if self.url:
            parsed = urlparse(self.url)
            host, port = parsed.hostname, parsed.port
        else:
            host, port = self.host, self.port

        return {
            "host": host,
            "port": port,
            "db": self.db,
            "mode": "cluster" if self.cluster_enabled else "sentinel" if self.sentinel_enabled else "standalone",
            "password_configured": bool(self.password),
        }


class CacheSettings(BaseSettings):
    """Memory layer and cache strategy settings."""

    memory_max_size: int = Field(1000)
    memory_ttl: int = Field(300, description="Default memory TTL in seconds")
    remote_ttl: int = Field(3600, description="Default remote TTL in seconds")
    cleanup_interval: float = Field(60.0, description="Memory cleanup period in seconds")

    strategies: Dict[str, CacheStrategyConfig] = Field(default_factory=default_strategy_configs)

    model_config = SettingsConfigDict(
        env_prefix="CACHE_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    @field_validator("memory_max_size")
    @classmethod
    def validate_memory_max_size(cls, v):
        if v < 1:
            raise ValueError("Memory cache size must be at least 1")
        return v

    @field_validator("memory_ttl", "remote_ttl")
    @classmethod
    def validate_ttl(cls, v):
        if v < 0:
            raise ValueError("TTL must not be negative")
        return v

    @field_validator("cleanup_interval")
    @classmethod
    def validate_cleanup_interval(cls, v):
        if v <= 0:
            raise ValueError("Cleanup interval must be positive")
        return v


class ResilienceSettings(BaseSettings):
    """Retry and circuit breaker defaults."""

    retry_max_retries: int = Field(3)
    retry_base_delay_ms: float = Field(1000.0)
    retry_max_delay_ms: float = Field(30000.0)
    retry_backoff_factor: float = Field(2.0)
    retry_jitter: bool = Field(True)

    breaker_failure_threshold: int = Field(5)
    breaker_recovery_timeout_ms: float = Field(60000.0)
    breaker_half_open_max_calls: int = Field(3)

    model_config = SettingsConfigDict(env_prefix="RESILIENCE_", env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("retry_max_retries")
    @classmethod
    def validate_max_retries(cls, v):
        if v < 0:
            raise ValueError("Max retries must not be negative")
        return v

    @field_validator("retry_base_delay_ms")
    @classmethod
    def validate_base_delay(cls, v):
        if v <= 0:
            raise ValueError("Base delay must be positive")
        return v

    @field_validator("retry_backoff_factor")
    @classmethod
    def validate_backoff_factor(cls, v):
        if v < 1:
            raise ValueError("Backoff factor must be at least 1")
        return v

    @field_validator("breaker_failure_threshold", "breaker_half_open_max_calls")
    @classmethod
    def validate_breaker_counts(cls, v):
        if v < 1:
            raise ValueError("Circuit breaker thresholds must be at least 1")
        return v


class SyncSettings(BaseSettings):
    """Cache sync queue settings."""

    batch_size: int = Field(10)
    batch_interval: float = Field(5.0, description="Drain period in seconds")
    max_retries: int = Field(3)

    model_config = SettingsConfigDict(env_prefix="CACHE_SYNC_", env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1:
            raise ValueError("Batch size must be at least 1")
        return v


class MonitoringSettings(BaseSettings):
    """Logging configuration settings."""

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: LogFormat = Field(LogFormat.JSON)
    log_file: Optional[str] = Field(None)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class Settings(BaseSettings):
    """Root settings object."""

    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", frozen=True)


@lru_cache()
def get_settings() -> Settings:
    """
    Get the process settings.

    Built on first call and reused afterwards; tests construct
    ``Settings`` directly instead.
    """
    return Settings()


def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate cross-field configuration and return any problems.

    Returns:
        List of validation error messages
    """
    settings = settings or get_settings()
    errors = []

    for name in DEFAULT_STRATEGY_NAMES:
        if name not in settings.cache.strategies:
            errors.append(f"Cache strategy '{name}' is not configured")

    if settings.redis.sentinel_enabled and not settings.redis.sentinels:
        errors.append("Sentinel mode requires at least one sentinel address")

    if settings.redis.reconnect_base_delay_ms > settings.redis.reconnect_max_delay_ms:
        errors.append("Reconnect base delay exceeds the reconnect max delay")

    if settings.resilience.retry_base_delay_ms > settings.resilience.retry_max_delay_ms:
        errors.append("Retry base delay exceeds the retry max delay")

    for name, strategy in settings.cache.strategies.items():
        if strategy.enabled and strategy.ttl.memory > strategy.ttl.remote > 0:
            errors.append(f"Cache strategy '{name}' keeps memory entries longer than remote entries")

    return errors


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    settings = settings or get_settings()
    return {
        "redis": settings.redis.get_connection_summary(),
        "cache": {
            "memory_max_size": settings.cache.memory_max_size,
            "memory_ttl": settings.cache.memory_ttl,
            "remote_ttl": settings.cache.remote_ttl,
            "strategies": {
                name: {
                    "enabled": strategy.enabled,
                    "layers": [layer.value for layer in strategy.layers],
                    "ttl": strategy.ttl.model_dump(),
                }
                for name, strategy in settings.cache.strategies.items()
            },
        },
        "resilience": settings.resilience.model_dump(),
        "sync": settings.sync.model_dump(),
        "monitoring": {
            "log_level": settings.monitoring.log_level.value,
            "log_format": settings.monitoring.log_format.value,
        },
    }
