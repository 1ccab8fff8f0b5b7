"""
Memoization
===========
Function-level caching on top of :class:`ResponseCache`.

Usage:
    @memoize(ttl=30.0)
    async def get_asset(ledger_id: str, code: str) -> dict:
        return await client.get(f"/ledgers/{ledger_id}/assets/{code}")
"""

import asyncio
import functools
import inspect
import json
from typing import Any, Callable, Dict, Optional, Tuple

from .response_cache import ResponseCache

KeyFunc = Callable[..., str]

_MISS = object()


def _default_key(args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> str:
    return json.dumps([list(args), kwargs], sort_keys=True, default=repr)


def memoize(
    fn: Optional[Callable] = None,
    *,
    key: Optional[KeyFunc] = None,
    cache: Optional[ResponseCache] = None,
    ttl: Optional[float] = None,
    max_entries: int = 100,
):
    """
    Cache a function's results by its arguments.

    Works as ``@memoize`` or ``@memoize(ttl=...)``. Calls are keyed by
    ``key(*args, **kwargs)`` or by the JSON-serialised arguments. For
    coroutine functions the running task is cached, so concurrent callers
    share one execution, and a task that fails or is cancelled is dropped
    from the cache. The cache is exposed as ``wrapper.cache``.

    Args:
        fn: Function to wrap (when used without parentheses)
        key: Custom key function receiving the call's arguments
        cache: Cache to store results in (a new one is created when omitted)
        ttl: Entry lifetime in seconds (the cache default when omitted)
        max_entries: Capacity of the cache created when ``cache`` is omitted
    """

    def decorate(func: Callable) -> Callable:
        store = cache if cache is not None else ResponseCache(
            ttl=ttl or 60.0, max_entries=max_entries
        )

        def make_key(args, kwargs) -> str:
            if key is not None:
                return key(*args, **kwargs)
            return _default_key(args, kwargs)

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                cache_key = make_key(args, kwargs)
                task = store.get(cache_key, _MISS)
                if task is _MISS:
                    task = asyncio.ensure_future(func(*args, **kwargs))
                    store.set(cache_key, task, ttl)
                    task.add_done_callback(
                        lambda t: _forget_failed(store, cache_key, t)
                    )
                return await asyncio.shield(task)

            async_wrapper.cache = store
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            cache_key = make_key(args, kwargs)
            result = store.get(cache_key, _MISS)
            if result is _MISS:
                # Exceptions propagate before anything is stored
                result = func(*args, **kwargs)
                store.set(cache_key, result, ttl)
            return result

        wrapper.cache = store
        return wrapper

    if fn is not None:
        return decorate(fn)
    return decorate


def _forget_failed(store: ResponseCache, cache_key: str, task: asyncio.Future) -> None:
    failed = task.cancelled() or task.exception() is not None
    if failed and store.peek(cache_key) is task:
        store.delete(cache_key)
