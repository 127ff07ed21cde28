"""
Remote key-value store (L2) on top of redis.asyncio.

The store connects lazily, tracks its connection status from the outcome
of every round trip and backs off between reconnect attempts. Once the
reconnect budget is spent it stays unavailable until ``connect()`` or
``reset_connection()`` is called. Operations never fall back on their own;
they raise typed exceptions and leave degradation to the caller.

Known limitation: pattern operations walk the keyspace with SCAN. This is
non-blocking for the server but still touches every key, so pattern
deletes get slower as the keyspace grows.
"""

import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import redis.asyncio as redis
from redis.asyncio.cluster import RedisCluster
from redis.asyncio.retry import Retry
from redis.asyncio.sentinel import Sentinel
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from ..exceptions import (
    RemoteStoreConnectionException,
    RemoteStoreException,
    RemoteStoreNotReadyException,
    RemoteStoreUnavailableException,
)
from ..logging_config import get_logger

if TYPE_CHECKING:
    from ..config import RedisSettings

T = TypeVar('T')

TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)

# Anything that stops the handshake counts against the reconnect budget,
# including server refusals (protected mode, missing ACL) and bad URLs
CONNECT_ERRORS = TRANSIENT_ERRORS + (RedisError, ValueError)


class ConnectionStatus(str, Enum):
    """Remote store connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    UNAVAILABLE = "unavailable"
    CLOSED = "closed"


def create_redis_client(settings: "RedisSettings"):
    """Build a standalone, sentinel or cluster client from settings."""
    common = {
        "password": settings.password,
        "socket_connect_timeout": settings.connect_timeout,
        "socket_timeout": settings.read_timeout,
        "decode_responses": False,
    }

    if settings.cluster_enabled:
        if settings.url:
            return RedisCluster.from_url(settings.url, **common)
        return RedisCluster(host=settings.host, port=settings.port, **common)

    retry = Retry(ExponentialBackoff(), settings.max_retries_per_request)

    if settings.sentinel_enabled:
        sentinel = Sentinel(
            settings.get_sentinel_hosts(),
            socket_timeout=settings.read_timeout,
            sentinel_kwargs={"password": settings.password} if settings.password else None,
        )
        return sentinel.master_for(settings.sentinel_master, db=settings.db, retry=retry, **common)

    if settings.url:
        return redis.from_url(settings.url, retry=retry, **common)

    return redis.Redis(host=settings.host, port=settings.port, db=settings.db, retry=retry, **common)


class RemoteStore:
    """Remote cache layer with connection tracking and reconnect backoff."""

    def __init__(
        self,
        settings: Optional["RedisSettings"] = None,
        client: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if settings is None:
            from ..config import RedisSettings
            settings = RedisSettings()
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__, 'remote_store')

        self._client = client
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.next_retry_at: Optional[float] = None
        self.last_error: Optional[str] = None

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'connects': 0,
        }

    def is_ready(self) -> bool:
        """True only after a successful round trip with no failure since."""
        return self.status == ConnectionStatus.READY

    def reconnect_delay_ms(self, attempt: int) -> int:
        return min(attempt * self.settings.reconnect_base_delay_ms, self.settings.reconnect_max_delay_ms)

    async def connect(self) -> None:
        """
        Connect and verify with PING.

        Also clears an exhausted reconnect budget, so it doubles as the
        manual recovery path from the unavailable state.
        """
        if self.status == ConnectionStatus.UNAVAILABLE:
            self.reconnect_attempts = 0
        self.next_retry_at = None
        await self._connect("connect")

    def reset_connection(self) -> None:
        """Forget previous failures; the next operation reconnects."""
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.next_retry_at = None
        self.last_error = None

    async def _connect(self, operation: str) -> None:
        self.status = ConnectionStatus.CONNECTING
        try:
            if self._client is None:
                self._client = create_redis_client(self.settings)
            await self._client.ping()
        except CONNECT_ERRORS as e:
            self._record_failure(e, operation)
            raise RemoteStoreConnectionException(
                message=f"Remote store connection failed: {e}", operation=operation, original_error=e
            )

        self.status = ConnectionStatus.READY
        self.reconnect_attempts = 0
        self.next_retry_at = None
        self.last_error = None
        self.stats['connects'] += 1
        self.logger.info("Connected to remote store", operation=operation)

    def _record_failure(self, error: Exception, operation: str) -> None:
        self.stats['errors'] += 1
        self.last_error = str(error)
        self.reconnect_attempts += 1

        if self.reconnect_attempts > self.settings.max_reconnect_attempts:
            self.status = ConnectionStatus.UNAVAILABLE
            self.next_retry_at = None
            self.logger.error(
                "Remote store unavailable, reconnect attempts exhausted",
                operation=operation,
                attempts=self.reconnect_attempts,
            )
            return

        self.status = ConnectionStatus.DISCONNECTED
        delay_ms = self.reconnect_delay_ms(self.reconnect_attempts)
        self.next_retry_at = self.clock() + delay_ms / 1000.0
        self.logger.warning(
            f"Remote store connection error: {error}",
            operation=operation,
            attempts=self.reconnect_attempts,
            retry_in_ms=delay_ms,
        )

    async def _ensure_ready(self, operation: str):
        if self.status == ConnectionStatus.READY:
            return self._client

        if self.status == ConnectionStatus.UNAVAILABLE:
            raise RemoteStoreUnavailableException(operation=operation, attempts=self.reconnect_attempts)

        if self.status == ConnectionStatus.CLOSED:
            raise RemoteStoreNotReadyException(
                message="Remote store is closed", operation=operation, status=self.status.value
            )

        if self.next_retry_at is not None and self.clock() < self.next_retry_at:
            raise RemoteStoreNotReadyException(
                message="Remote store is waiting to reconnect", operation=operation, status=self.status.value
            )

        await self._connect(operation)
        return self._client

    async def _execute(self, operation: str, key: Optional[str],
                       command: Callable[[Any], Awaitable[T]]) -> T:
        client = await self._ensure_ready(operation)
        try:
            return await command(client)
        except TRANSIENT_ERRORS as e:
            self._record_failure(e, operation)
            raise RemoteStoreConnectionException(operation=operation, key=key, original_error=e)
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.error(f"Remote store {operation} error: {e}", operation=operation, key=key)
            raise RemoteStoreException(
                message=f"Remote store {operation} failed", operation=operation, key=key, original_error=e
            )

    async def get(self, key: str) -> Optional[bytes]:
        data = await self._execute("get", key, lambda c: c.get(key))
        self.stats['hits' if data is not None else 'misses'] += 1
        return data

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:
        """Store raw bytes; a ttl of None or <= 0 stores without expiry."""
        if ttl and ttl > 0:
            await self._execute("set", key, lambda c: c.setex(key, ttl, value))
        else:
            await self._execute("set", key, lambda c: c.set(key, value))
        self.stats['sets'] += 1
        return True

    async def delete(self, key: str) -> bool:
        removed = await self._execute("delete", key, lambda c: c.delete(key))
        self.stats['deletes'] += removed
        return removed > 0

    async def exists(self, key: str) -> bool:
        return await self._execute("exists", key, lambda c: c.exists(key)) > 0

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._execute("expire", key, lambda c: c.expire(key, seconds)))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds, -1 for keys without expiry, None if absent."""
        remaining = await self._execute("ttl", key, lambda c: c.ttl(key))
        return None if remaining == -2 else remaining

    async def keys_matching(self, pattern: str) -> List[str]:
        """Resolve a glob pattern with SCAN."""
        async def scan(client):
            return [
                key.decode('utf-8') if isinstance(key, bytes) else key
                async for key in client.scan_iter(match=pattern, count=self.settings.scan_count)
            ]

        return await self._execute("keys_matching", pattern, scan)

    async def delete_many(self, keys: List[str]) -> int:
        if not keys:
            return 0

        removed = 0
        batch = self.settings.scan_count
        for start in range(0, len(keys), batch):
            chunk = keys[start:start + batch]
            removed += await self._execute("delete_many", None, lambda c: c.delete(*chunk))

        self.stats['deletes'] += removed
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern and return the count."""
        keys = await self.keys_matching(pattern)
        removed = await self.delete_many(keys)
        self.logger.debug(
            f"Deleted {removed} keys matching pattern", operation="delete_pattern", pattern=pattern
        )
        return removed

    async def incr(self, key: str, amount: int = 1) -> int:
        return await self._execute("incr", key, lambda c: c.incrby(key, amount))

    async def decr(self, key: str, amount: int = 1) -> int:
        return await self._execute("decr", key, lambda c: c.decrby(key, amount))

    async def ping(self) -> bool:
        """Health check; connection problems return False instead of raising."""
        try:
            return bool(await self._execute("ping", None, lambda c: c.ping()))
        except RemoteStoreException as e:
            self.logger.debug(f"Remote store ping failed: {e.message}", operation="ping")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.status = ConnectionStatus.CLOSED
        self.logger.info("Remote store connection closed", operation="close")

    def get_stats(self) -> Dict[str, Any]:
        """Get remote store statistics."""
        total_requests = self.stats['hits'] + self.stats['misses']
        hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

        return {
            **self.stats,
            'status': self.status.value,
            'reconnect_attempts': self.reconnect_attempts,
            'last_error': self.last_error,
            'hit_rate': hit_rate,
            'total_requests': total_requests,
        }
