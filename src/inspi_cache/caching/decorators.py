"""
Caching wrappers for async functions.

``cached`` and ``invalidates`` take the operation to wrap and return the
wrapped coroutine function, so they compose explicitly at call sites:

    load_work = cached(cache_manager, work_key, 600, repository.load_work)

``cacheable`` and ``cache_evict`` are the same wrappers in decorator form.
Both take the cache manager explicitly; there is no global instance to
fall back on.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from ..logging_config import get_logger
from .cache_manager import CacheManager
from .models import CacheLayer

logger = get_logger(__name__, 'cache_decorators')

KeyFunction = Callable[..., str]
PatternSource = Union[Sequence[str], Callable[..., Iterable[str]]]
AsyncOperation = Callable[..., Awaitable[Any]]


def _require_coroutine(operation: Any, wrapper: str) -> None:
    if not asyncio.iscoroutinefunction(operation):
        name = getattr(operation, '__qualname__', repr(operation))
        raise TypeError(f"{wrapper} only wraps async functions, got {name}")


def cached(
    cache_manager: CacheManager,
    key_fn: KeyFunction,
    ttl: Optional[int],
    operation: AsyncOperation,
    *,
    remote_ttl: Optional[int] = None,
    layers: Optional[Iterable[CacheLayer]] = None,
) -> AsyncOperation:
    """
    Cache the result of an async operation under ``key_fn(*args, **kwargs)``.

    Lookups go through ``get_or_set``, so concurrent callers with the same
    key share one call of the operation. A ``None`` result is returned but
    not cached. ``ttl`` of None uses the manager defaults.

    Raises:
        TypeError: If operation is not an async function
    """
    _require_coroutine(operation, "cached")
    layers = None if layers is None else tuple(layers)
    name = operation.__name__

    @functools.wraps(operation)
    async def wrapper(*args, **kwargs):
        cache_key = key_fn(*args, **kwargs)
        logger.debug(f"Cached call {name}", operation=name, key=cache_key)
        return await cache_manager.get_or_set(
            cache_key,
            lambda: operation(*args, **kwargs),
            layers=layers,
            ttl=ttl,
            remote_ttl=remote_ttl,
        )

    return wrapper


def invalidates(
    cache_manager: CacheManager,
    patterns: PatternSource,
    operation: AsyncOperation,
    *,
    layers: Optional[Iterable[CacheLayer]] = None,
) -> AsyncOperation:
    """
    Drop cache entries after the wrapped async operation succeeds.

    ``patterns`` is either a fixed list or a callable receiving the
    operation's arguments. Entries containing ``*`` are deleted as
    patterns, the rest as exact keys. Nothing is invalidated when the
    operation raises.

    Raises:
        TypeError: If operation is not an async function
    """
    _require_coroutine(operation, "invalidates")
    layers = None if layers is None else tuple(layers)
    name = operation.__name__

    @functools.wraps(operation)
    async def wrapper(*args, **kwargs):
        result = await operation(*args, **kwargs)

        targets = patterns(*args, **kwargs) if callable(patterns) else patterns
        removed = 0
        for target in targets:
            if '*' in target:
                removed += await cache_manager.delete_pattern(target, layers=layers)
            elif await cache_manager.delete(target, layers=layers):
                removed += 1

        logger.info(f"{name} invalidated cache entries", operation=name, removed=removed)
        return result

    return wrapper


def cacheable(cache_manager: CacheManager, key_fn: KeyFunction, ttl: Optional[int] = None, **options):
    """Decorator form of :func:`cached`."""
    def decorator(operation: AsyncOperation) -> AsyncOperation:
        return cached(cache_manager, key_fn, ttl, operation, **options)
    return decorator


def cache_evict(cache_manager: CacheManager, patterns: PatternSource, **options):
    """Decorator form of :func:`invalidates`."""
    def decorator(operation: AsyncOperation) -> AsyncOperation:
        return invalidates(cache_manager, patterns, operation, **options)
    return decorator
