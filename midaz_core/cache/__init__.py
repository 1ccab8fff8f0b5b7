"""
Response Caching
================
TTL-bounded cache for GET responses, the key scheme it uses, and a
memoizing decorator built on the same cache.
"""

from .keys import make_cache_key
from .memoize import memoize
from .response_cache import CacheConfig, CacheEntry, ResponseCache

__all__ = [
    "CacheConfig",
    "CacheEntry",
    "ResponseCache",
    "make_cache_key",
    "memoize",
]
